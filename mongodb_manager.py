from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ASCENDING, DESCENDING
from pymongo.errors import PyMongoError
from pymongo.results import InsertOneResult, UpdateResult, DeleteResult


class InvalidIdError(ValueError):
    """Raised when a path identifier is not a valid ObjectId"""


class NotFoundError(LookupError):
    """Raised when the addressed document does not exist"""


class NoSeatsAvailableError(Exception):
    """Raised when a seat decrement finds the class already full"""


def to_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidIdError(f"Invalid id: {value!r}")


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Render ObjectId values as hex strings so the document is JSON-safe"""
    if doc is None:
        return None
    doc = dict(doc)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime) and v.tzinfo is None:
            # Mongo hands back naive UTC datetimes
            doc[k] = v.replace(tzinfo=timezone.utc)
    return doc


def insert_ack(result: InsertOneResult) -> Dict[str, Any]:
    return {"acknowledged": result.acknowledged, "insertedId": str(result.inserted_id)}


def update_ack(result: UpdateResult) -> Dict[str, Any]:
    upserted_id = result.upserted_id
    return {
        "acknowledged": result.acknowledged,
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedId": str(upserted_id) if upserted_id is not None else None,
        "upsertedCount": 1 if upserted_id is not None else 0,
    }


def delete_ack(result: DeleteResult) -> Dict[str, Any]:
    return {"acknowledged": result.acknowledged, "deletedCount": result.deleted_count}


class MongoDBManager:
    """Manages MongoDB database operations for Shutter Academy"""

    def __init__(self, mongo_uri: Optional[str] = None, db_name: str = "shutterAcademyDb",
                 client: Optional[MongoClient] = None):
        """
        Initialize MongoDB connection

        Args:
            mongo_uri: MongoDB connection URI
            db_name: Name of the database to use
            client: An already constructed client (used by tests)
        """
        try:
            self.client = client if client is not None else MongoClient(mongo_uri)
            self.db = self.client[db_name]

            # Collections
            self.classes = self.db['classes']
            self.users = self.db['users']
            self.payments = self.db['payments']
            self.selected_classes = self.db['selectedClasses']

            self._create_indexes()

            print("✅ MongoDB connection established successfully")
        except Exception as e:
            print(f"❌ Failed to connect to MongoDB: {e}")
            raise

    def _create_indexes(self):
        """Create database indexes for efficient queries"""
        def _ensure_index(collection, keys, *, unique: bool = False):
            try:
                collection.create_index(keys, unique=unique)
            except PyMongoError as create_err:
                # Existing duplicates block a unique index; keep serving
                print(f"⚠️ Warning: Could not create index {keys} (unique={unique}): {create_err}")

        _ensure_index(self.users, [("email", ASCENDING)], unique=True)
        _ensure_index(self.users, [("role", ASCENDING)])

        _ensure_index(self.classes, [("status", ASCENDING)])
        _ensure_index(self.classes, [("instructorEmail", ASCENDING)])

        _ensure_index(self.payments, [("studentInfo.email", ASCENDING), ("date", DESCENDING)])
        _ensure_index(self.selected_classes, [("studentInfo.email", ASCENDING)])

        print("✅ MongoDB indexes ensured")

    def ping(self) -> bool:
        self.client.admin.command("ping")
        print("✅ Pinged your deployment. You successfully connected to MongoDB!")
        return True

    def close(self):
        self.client.close()
        print("🔌 MongoDB connection closed")

    # ==================== USER OPERATIONS ====================

    def upsert_user(self, email: str, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update the user keyed by email"""
        updates = {k: v for k, v in user_data.items() if k != "_id"}
        updates["email"] = email
        result = self.users.update_one({"email": email}, {"$set": updates}, upsert=True)
        return update_ack(result)

    def get_users_by_role(self, role: str) -> List[Dict[str, Any]]:
        return [serialize_doc(u) for u in self.users.find({"role": {"$eq": role}})]

    # ==================== CLASS OPERATIONS ====================

    def create_class(self, class_data: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in class_data.items() if k != "_id"}
        return insert_ack(self.classes.insert_one(doc))

    def get_all_classes(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return [serialize_doc(c) for c in self.classes.find(filters or {})]

    def get_classes_by_status(self, status: str) -> List[Dict[str, Any]]:
        return self.get_all_classes({"status": {"$eq": status}})

    def get_classes_by_instructor(self, email: str) -> List[Dict[str, Any]]:
        return self.get_all_classes({"instructorEmail": email})

    def update_class(self, class_id: str, updates: Dict[str, Any], upsert: bool = False) -> Dict[str, Any]:
        """$set the given fields; raises NotFoundError when nothing matched and upsert is off"""
        query = {"_id": to_object_id(class_id)}
        updates = {k: v for k, v in updates.items() if k != "_id"}
        result = self.classes.update_one(query, {"$set": updates}, upsert=upsert)
        if not upsert and result.matched_count == 0:
            raise NotFoundError(f"Class {class_id} not found")
        return update_ack(result)

    def _coerce_seat_counts(self, oid: ObjectId):
        """Older documents may carry seat counts as strings; $gt and $inc need numbers"""
        doc = self.classes.find_one({"_id": oid}, {"availableSeats": 1, "totalEnrolled": 1})
        if not doc:
            return
        seats, enrolled = doc.get("availableSeats"), doc.get("totalEnrolled")
        if not isinstance(seats, str) and not isinstance(enrolled, str):
            return
        try:
            updates = {"availableSeats": int(seats or 0), "totalEnrolled": int(enrolled or 0)}
        except ValueError:
            return
        # Compare-and-set on the values just read so a concurrent writer wins cleanly
        self.classes.update_one(
            {"_id": oid, "availableSeats": seats, "totalEnrolled": enrolled},
            {"$set": updates},
        )

    def enroll_seat(self, class_id: str) -> Dict[str, Any]:
        """
        Take one seat: availableSeats - 1 and totalEnrolled + 1 in a single
        conditional update, so concurrent enrollments never oversell.
        """
        oid = to_object_id(class_id)
        self._coerce_seat_counts(oid)
        result = self.classes.update_one(
            {"_id": oid, "availableSeats": {"$gt": 0}},
            {"$inc": {"availableSeats": -1, "totalEnrolled": 1}},
        )
        if result.matched_count == 0:
            if self.classes.count_documents({"_id": oid}, limit=1) == 0:
                raise NotFoundError(f"Class {class_id} not found")
            raise NoSeatsAvailableError(f"No seats available for class {class_id}")
        return update_ack(result)

    # ==================== SELECTED CLASS OPERATIONS ====================

    def create_selected_class(self, selection: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in selection.items() if k != "_id"}
        return insert_ack(self.selected_classes.insert_one(doc))

    def get_selected_classes(self, email: str) -> List[Dict[str, Any]]:
        return [serialize_doc(s) for s in self.selected_classes.find({"studentInfo.email": email})]

    def get_selected_class(self, selection_id: str) -> Optional[Dict[str, Any]]:
        return serialize_doc(self.selected_classes.find_one({"_id": to_object_id(selection_id)}))

    def delete_selected_class(self, selection_id: str) -> Dict[str, Any]:
        result = self.selected_classes.delete_one({"_id": to_object_id(selection_id)})
        if result.deleted_count == 0:
            raise NotFoundError(f"Selected class {selection_id} not found")
        return delete_ack(result)

    # ==================== PAYMENT OPERATIONS ====================

    def create_payment(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in payment.items() if k != "_id"}
        return insert_ack(self.payments.insert_one(doc))

    def get_payments(self, email: str) -> List[Dict[str, Any]]:
        """Payments for a student, most recent first"""
        cursor = self.payments.find({"studentInfo.email": email}).sort("date", DESCENDING)
        return [serialize_doc(p) for p in cursor]

    def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics"""
        return {
            "database": "mongodb",
            "users": self.users.count_documents({}),
            "classes": self.classes.count_documents({}),
            "approved_classes": self.classes.count_documents({"status": "approved"}),
            "payments": self.payments.count_documents({}),
            "selected_classes": self.selected_classes.count_documents({}),
        }
