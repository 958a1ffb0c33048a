import json
import os
import threading
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from bson import ObjectId

from mongodb_manager import InvalidIdError, NotFoundError, NoSeatsAvailableError

COLLECTIONS = ("classes", "users", "payments", "selectedClasses")


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, ObjectId):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _lookup(doc: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path such as 'studentInfo.email'"""
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min.replace(tzinfo=timezone.utc)
    else:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DatabaseManager:
    """Manages file-based database operations, one JSON file per collection"""

    def __init__(self, base_dir: str = "data"):
        self.base_dir = str(base_dir)
        # Guards every read-modify-write so seat updates stay atomic
        self._lock = threading.RLock()
        self._ensure_directories()

    def _ensure_directories(self):
        """Ensure the data directory and collection files exist"""
        os.makedirs(self.base_dir, exist_ok=True)
        for name in COLLECTIONS:
            path = self.get_collection_file(name)
            if not os.path.exists(path):
                self.write_json(path, [])

    def get_collection_file(self, collection: str) -> str:
        """Get collection json file path"""
        return os.path.join(self.base_dir, f"{collection}.json")

    def read_json(self, file_path: str) -> Optional[List[Dict[str, Any]]]:
        """Read JSON file; a missing file reads as None"""
        if not os.path.exists(file_path):
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def write_json(self, file_path: str, data: List[Dict[str, Any]]):
        """Write JSON file through a temp file so readers never see half a document list"""
        try:
            tmp_path = f"{file_path}.tmp"
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=_json_default)
            os.replace(tmp_path, file_path)
        except Exception as e:
            print(f"Error writing {file_path}: {e}")
            raise

    def ping(self) -> bool:
        return os.path.isdir(self.base_dir)

    def close(self):
        pass

    # ==================== GENERIC COLLECTION HELPERS ====================

    def _load(self, collection: str) -> List[Dict[str, Any]]:
        return self.read_json(self.get_collection_file(collection)) or []

    def _save(self, collection: str, docs: List[Dict[str, Any]]):
        self.write_json(self.get_collection_file(collection), docs)

    @staticmethod
    def _check_id(value: str) -> str:
        if not ObjectId.is_valid(value):
            raise InvalidIdError(f"Invalid id: {value!r}")
        return str(value)

    @staticmethod
    def _matches(doc: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        return all(_lookup(doc, path) == expected for path, expected in filters.items())

    def _find(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            docs = self._load(collection)
        return [d for d in docs if self._matches(d, filters or {})]

    def _insert(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in document.items() if k != "_id"}
        doc_id = str(ObjectId())
        doc["_id"] = doc_id
        # Round-trip through JSON so stored values match what a reload returns
        doc = json.loads(json.dumps(doc, default=_json_default))
        with self._lock:
            docs = self._load(collection)
            docs.append(doc)
            self._save(collection, docs)
        return {"acknowledged": True, "insertedId": doc_id}

    def _update_one(self, collection: str, filters: Dict[str, Any], updates: Dict[str, Any],
                    upsert: bool = False) -> Dict[str, Any]:
        updates = json.loads(json.dumps({k: v for k, v in updates.items() if k != "_id"},
                                        default=_json_default))
        with self._lock:
            docs = self._load(collection)
            for doc in docs:
                if self._matches(doc, filters):
                    modified = any(doc.get(k) != v for k, v in updates.items())
                    doc.update(updates)
                    if modified:
                        self._save(collection, docs)
                    return {
                        "acknowledged": True,
                        "matchedCount": 1,
                        "modifiedCount": 1 if modified else 0,
                        "upsertedId": None,
                        "upsertedCount": 0,
                    }

            if not upsert:
                return {"acknowledged": True, "matchedCount": 0, "modifiedCount": 0,
                        "upsertedId": None, "upsertedCount": 0}

            new_doc = {k: v for k, v in filters.items() if "." not in k}
            new_doc.update(updates)
            new_doc.setdefault("_id", str(ObjectId()))
            docs.append(new_doc)
            self._save(collection, docs)
            return {
                "acknowledged": True,
                "matchedCount": 0,
                "modifiedCount": 0,
                "upsertedId": new_doc["_id"],
                "upsertedCount": 1,
            }

    # ==================== USER OPERATIONS ====================

    def upsert_user(self, email: str, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update the user keyed by email"""
        updates = dict(user_data)
        updates["email"] = email
        return self._update_one("users", {"email": email}, updates, upsert=True)

    def get_users_by_role(self, role: str) -> List[Dict[str, Any]]:
        return self._find("users", {"role": role})

    # ==================== CLASS OPERATIONS ====================

    def create_class(self, class_data: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("classes", class_data)

    def get_all_classes(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return self._find("classes", filters)

    def get_classes_by_status(self, status: str) -> List[Dict[str, Any]]:
        return self._find("classes", {"status": status})

    def get_classes_by_instructor(self, email: str) -> List[Dict[str, Any]]:
        return self._find("classes", {"instructorEmail": email})

    def update_class(self, class_id: str, updates: Dict[str, Any], upsert: bool = False) -> Dict[str, Any]:
        result = self._update_one("classes", {"_id": self._check_id(class_id)}, updates, upsert=upsert)
        if not upsert and result["matchedCount"] == 0:
            raise NotFoundError(f"Class {class_id} not found")
        return result

    def enroll_seat(self, class_id: str) -> Dict[str, Any]:
        """Take one seat under the collection lock"""
        class_id = self._check_id(class_id)
        with self._lock:
            docs = self._load("classes")
            for doc in docs:
                if doc.get("_id") != class_id:
                    continue
                if int(doc.get("availableSeats") or 0) <= 0:
                    raise NoSeatsAvailableError(f"No seats available for class {class_id}")
                doc["availableSeats"] = int(doc["availableSeats"]) - 1
                doc["totalEnrolled"] = int(doc.get("totalEnrolled") or 0) + 1
                self._save("classes", docs)
                return {"acknowledged": True, "matchedCount": 1, "modifiedCount": 1,
                        "upsertedId": None, "upsertedCount": 0}
        raise NotFoundError(f"Class {class_id} not found")

    # ==================== SELECTED CLASS OPERATIONS ====================

    def create_selected_class(self, selection: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("selectedClasses", selection)

    def get_selected_classes(self, email: str) -> List[Dict[str, Any]]:
        return self._find("selectedClasses", {"studentInfo.email": email})

    def get_selected_class(self, selection_id: str) -> Optional[Dict[str, Any]]:
        found = self._find("selectedClasses", {"_id": self._check_id(selection_id)})
        return found[0] if found else None

    def delete_selected_class(self, selection_id: str) -> Dict[str, Any]:
        selection_id = self._check_id(selection_id)
        with self._lock:
            docs = self._load("selectedClasses")
            remaining = [d for d in docs if d.get("_id") != selection_id]
            if len(remaining) == len(docs):
                raise NotFoundError(f"Selected class {selection_id} not found")
            self._save("selectedClasses", remaining)
        return {"acknowledged": True, "deletedCount": 1}

    # ==================== PAYMENT OPERATIONS ====================

    def create_payment(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        return self._insert("payments", payment)

    def get_payments(self, email: str) -> List[Dict[str, Any]]:
        """Payments for a student, most recent first"""
        payments = self._find("payments", {"studentInfo.email": email})
        return sorted(payments, key=lambda p: _parse_date(p.get("date")), reverse=True)

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        return {
            "database": "file",
            "users": len(self._find("users")),
            "classes": len(self._find("classes")),
            "approved_classes": len(self._find("classes", {"status": "approved"})),
            "payments": len(self._find("payments")),
            "selected_classes": len(self._find("selectedClasses")),
        }
