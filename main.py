from fastapi import FastAPI, HTTPException, Depends, status, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any, Callable, Literal
from contextlib import asynccontextmanager
import math
import os
from datetime import datetime, timedelta, timezone
import jwt
import stripe
from dotenv import load_dotenv
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
import asyncio
import time

from db_manager import DatabaseManager
from mongodb_manager import MongoDBManager, InvalidIdError, NotFoundError, NoSeatsAvailableError

# Load environment variables from this file's directory so running uvicorn from repo root still works
ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(dotenv_path=ENV_PATH)

# Environment
APP_ENV = os.getenv("APP_ENV", "development").lower()  # development | production

# Check database type from environment
DB_TYPE = os.getenv("DB_TYPE", "file")  # "file" or "mongodb"
MONGO_URI = os.getenv("MONGO_URI")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "shutterAcademyDb")
DATA_DIR = os.getenv("DATA_DIR", "data")

# Auth configuration
SECRET_KEY = os.getenv("ACCESS_TOKEN_SECRET", "your-secret-key-change-this-in-production")
if APP_ENV != "development" and SECRET_KEY == "your-secret-key-change-this-in-production":
    raise ValueError("ACCESS_TOKEN_SECRET must be set in production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 1 day
UNAUTHORIZED_MESSAGE = "Unauthorized access"

# Stripe configuration
stripe.api_key = os.getenv("PAYMENT_SECRET_KEY")
PAYMENT_CURRENCY = "usd"

REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))


def create_db():
    """Build the storage manager selected by DB_TYPE"""
    if DB_TYPE == "mongodb":
        if not MONGO_URI:
            raise ValueError("MONGO_URI environment variable not set")

        manager = MongoDBManager(mongo_uri=MONGO_URI, db_name=MONGO_DB_NAME)
        manager.ping()
        print("✅ Using MongoDB for storage")
        return manager

    manager = DatabaseManager(base_dir=DATA_DIR)
    print("✅ Using file-based storage")
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.db = create_db()
    try:
        yield
    finally:
        app.state.db.close()


app = FastAPI(title="Shutter Academy API", lifespan=lifespan)

# CORS Configuration
# In production set CORS_ORIGINS to a comma-separated list, e.g.
#   CORS_ORIGINS=https://shutter-academy.web.app,https://www.shutter-academy.com
cors_origins_env = os.getenv("CORS_ORIGINS", "").strip()

cors_kwargs: Dict[str, Any] = {
    "allow_methods": ["*"],
    "allow_headers": ["*"],
}

if cors_origins_env:
    cors_kwargs["allow_origins"] = [o.strip() for o in cors_origins_env.split(",") if o.strip()]
    cors_kwargs["allow_credentials"] = True
else:
    cors_kwargs["allow_origins"] = ["*"]

app.add_middleware(CORSMiddleware, **cors_kwargs)

# ==================== TIMEOUT MIDDLEWARE ====================

class TimeoutMiddleware(BaseHTTPMiddleware):
    """
    Middleware to enforce request timeouts
    Prevents requests from hanging indefinitely
    """

    def __init__(self, app, timeout: int = 30):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.time()

        try:
            response = await asyncio.wait_for(
                call_next(request),
                timeout=self.timeout
            )

            duration = time.time() - start_time
            if duration > 5:
                print(f"⚠️ Slow request: {request.method} {request.url.path} took {duration:.2f}s")

            return response

        except asyncio.TimeoutError:
            duration = time.time() - start_time
            print(f"⏱️ Request timeout: {request.method} {request.url.path} after {duration:.2f}s")

            return JSONResponse(
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                content={
                    "error": True,
                    "message": f"Request timeout - operation took longer than {self.timeout} seconds",
                    "path": str(request.url.path),
                    "method": request.method
                }
            )

app.add_middleware(TimeoutMiddleware, timeout=REQUEST_TIMEOUT)
print(f"✅ Timeout middleware enabled: {REQUEST_TIMEOUT}s per request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all requests with timing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        print(f"📥 {request.method} {request.url.path}")

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            status_icon = "✅" if response.status_code < 400 else "❌"
            print(f"{status_icon} {request.method} {request.url.path} - {response.status_code} ({duration:.2f}s)")

            response.headers["X-Process-Time"] = f"{duration:.4f}"
            return response

        except Exception as e:
            duration = time.time() - start_time
            print(f"❌ {request.method} {request.url.path} - ERROR ({duration:.2f}s): {str(e)}")
            raise

app.add_middleware(RequestLoggingMiddleware)

# ==================== ERROR HANDLERS ====================

def error_response(status_code: int, message: Any, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": True, "message": message},
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, exc.detail, getattr(exc, "headers", None))


@app.exception_handler(InvalidIdError)
async def invalid_id_handler(request: Request, exc: InvalidIdError):
    return error_response(status.HTTP_400_BAD_REQUEST, "Invalid id")


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return error_response(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(NoSeatsAvailableError)
async def no_seats_handler(request: Request, exc: NoSeatsAvailableError):
    return error_response(status.HTTP_409_CONFLICT, "No seats available")


@app.exception_handler(PyMongoError)
@app.exception_handler(OSError)
async def storage_error_handler(request: Request, exc: Exception):
    print(f"❌ Storage error on {request.method} {request.url.path}: {exc}")
    return error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Database unavailable")

# Security
security = HTTPBearer(auto_error=False)

# ==================== PYDANTIC MODELS ====================

ClassStatus = Literal["pending", "approved", "denied"]
UserRole = Literal["student", "instructor", "admin"]


class TokenRequest(BaseModel):
    class Config:
        extra = "allow"

    email: EmailStr


class TokenResponse(BaseModel):
    token: str


class PaymentIntentRequest(BaseModel):
    price: Optional[float] = None


class PaymentIntentResponse(BaseModel):
    clientSecret: str


class StudentInfo(BaseModel):
    class Config:
        extra = "allow"

    email: EmailStr
    name: Optional[str] = None


class PaymentRequest(BaseModel):
    class Config:
        extra = "allow"

    studentInfo: StudentInfo
    classId: Optional[str] = None
    selectedClassId: Optional[str] = None
    className: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    amount: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    transactionId: Optional[str] = None
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator('date')
    @classmethod
    def normalize_date(cls, v: datetime) -> datetime:
        # Naive timestamps are taken as UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def require_amount(self):
        if self.price is None and self.amount is None:
            raise ValueError("Either price or amount is required")
        return self


class UserRequest(BaseModel):
    class Config:
        extra = "allow"

    name: Optional[str] = None
    photoURL: Optional[str] = None
    role: Optional[UserRole] = None


class ClassRequest(BaseModel):
    class Config:
        extra = "allow"

    name: Optional[str] = None
    image: Optional[str] = None
    instructorName: Optional[str] = None
    instructorEmail: EmailStr
    availableSeats: int = Field(..., ge=0)
    totalEnrolled: int = Field(0, ge=0)
    price: Optional[float] = Field(None, ge=0)
    status: ClassStatus = "pending"
    feedback: Optional[str] = None


class ClassStatusRequest(BaseModel):
    status: ClassStatus


class ClassFeedbackRequest(BaseModel):
    feedback: str


class ClassUpdateRequest(BaseModel):
    """Partial update; unknown fields are passed through as-is"""
    class Config:
        extra = "allow"

    name: Optional[str] = None
    image: Optional[str] = None
    instructorName: Optional[str] = None
    instructorEmail: Optional[EmailStr] = None
    availableSeats: Optional[int] = Field(None, ge=0)
    totalEnrolled: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    status: Optional[str] = None
    feedback: Optional[str] = None


def dump_updates(model: BaseModel) -> Dict[str, Any]:
    """Fields the caller sent, minus nulls on declared fields"""
    declared = type(model).model_fields
    return {
        k: v for k, v in model.model_dump(exclude_unset=True).items()
        if v is not None or k not in declared
    }


class SelectedClassRequest(BaseModel):
    class Config:
        extra = "allow"

    studentInfo: StudentInfo
    classId: str

# ==================== HELPER FUNCTIONS ====================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create JWT access token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


def verify_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Dict[str, Any]:
    """Verify the bearer token and return its decoded claims"""
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=UNAUTHORIZED_MESSAGE,
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise unauthorized
    try:
        return jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        raise unauthorized


def get_db(request: Request):
    """Storage manager created in the application lifespan"""
    return request.app.state.db


def to_minor_units(price: float) -> int:
    """25.00 -> 2500"""
    return int(round(price * 100))


def create_stripe_payment_intent(amount: int) -> str:
    """Ask Stripe for a card-only PaymentIntent and return its client secret"""
    intent = stripe.PaymentIntent.create(
        amount=amount,
        currency=PAYMENT_CURRENCY,
        payment_method_types=["card"],
    )
    return intent.client_secret

# ==================== API ENDPOINTS ====================

@app.get("/", response_class=PlainTextResponse)
def read_root():
    return "Shutter academy is running"


@app.get("/stats")
def get_stats(decoded: dict = Depends(verify_token), db=Depends(get_db)):
    """Get database statistics"""
    return db.get_database_stats()

# ==================== AUTH & PAYMENT ENDPOINTS ====================

@app.post("/jwt", response_model=TokenResponse)
def issue_token(request: TokenRequest):
    """Sign the posted identity into a one-day bearer token"""
    token = create_access_token(request.model_dump())
    return {"token": token}


@app.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(request: PaymentIntentRequest, decoded: dict = Depends(verify_token)):
    if not request.price or not math.isfinite(request.price) or request.price <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Price is required")

    amount = to_minor_units(request.price)
    try:
        client_secret = create_stripe_payment_intent(amount)
    except stripe.StripeError as e:
        print(f"❌ Stripe error for {decoded.get('email')}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider error"
        )
    return {"clientSecret": client_secret}


@app.post("/payment")
def create_payment(request: PaymentRequest, decoded: dict = Depends(verify_token), db=Depends(get_db)):
    """Record a completed payment (append-only)"""
    return db.create_payment(request.model_dump(exclude_none=True))


@app.get("/payment/{email}")
def get_payments(email: str, decoded: dict = Depends(verify_token), db=Depends(get_db)) -> List[Dict[str, Any]]:
    """Enrolled classes for a student, most recent payment first"""
    return db.get_payments(email)

# ==================== USER ENDPOINTS ====================

@app.put("/users/{email}")
def upsert_user(email: str, request: UserRequest, db=Depends(get_db)):
    return db.upsert_user(email, dump_updates(request))


@app.get("/instructors")
def get_instructors(db=Depends(get_db)) -> List[Dict[str, Any]]:
    return db.get_users_by_role("instructor")

# ==================== CLASS ENDPOINTS ====================

@app.post("/classes")
def create_class(request: ClassRequest, decoded: dict = Depends(verify_token), db=Depends(get_db)):
    """Create a class submitted by an instructor"""
    return db.create_class(request.model_dump(exclude_none=True))


@app.patch("/classes/{class_id}")
def enroll_in_class(class_id: str, decoded: dict = Depends(verify_token), db=Depends(get_db)):
    """Take one seat in a class after a student pays"""
    return db.enroll_seat(class_id)


@app.patch("/updateClassStatus/{class_id}")
def update_class_status(class_id: str, request: ClassStatusRequest,
                        decoded: dict = Depends(verify_token), db=Depends(get_db)):
    return db.update_class(class_id, {"status": request.status})


@app.put("/classFeedback/{class_id}")
def set_class_feedback(class_id: str, request: ClassFeedbackRequest,
                       decoded: dict = Depends(verify_token), db=Depends(get_db)):
    return db.update_class(class_id, {"feedback": request.feedback}, upsert=True)


@app.patch("/updateClass/{class_id}")
def update_class(class_id: str, request: ClassUpdateRequest,
                 decoded: dict = Depends(verify_token), db=Depends(get_db)):
    updates = dump_updates(request)
    updates.pop("_id", None)
    if not updates:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    return db.update_class(class_id, updates)


@app.get("/classes")
def get_classes(db=Depends(get_db)) -> List[Dict[str, Any]]:
    return db.get_all_classes()


@app.get("/approvedClasses")
def get_approved_classes(db=Depends(get_db)) -> List[Dict[str, Any]]:
    return db.get_classes_by_status("approved")


@app.get("/instructorClasses/{email}")
def get_instructor_classes(email: str, decoded: dict = Depends(verify_token),
                           db=Depends(get_db)) -> List[Dict[str, Any]]:
    return db.get_classes_by_instructor(email)

# ==================== SELECTED CLASS ENDPOINTS ====================

@app.post("/selectedClasses")
def create_selected_class(request: SelectedClassRequest, decoded: dict = Depends(verify_token),
                          db=Depends(get_db)):
    return db.create_selected_class(request.model_dump(exclude_none=True))


@app.get("/selectedClasses/{email}")
def get_selected_classes(email: str, decoded: dict = Depends(verify_token),
                         db=Depends(get_db)) -> List[Dict[str, Any]]:
    return db.get_selected_classes(email)


@app.get("/selectedAClasses/{selection_id}")
def get_selected_class(selection_id: str, decoded: dict = Depends(verify_token), db=Depends(get_db)):
    selection = db.get_selected_class(selection_id)
    if not selection:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Selected class not found")
    return selection


@app.delete("/selectedClasses/{selection_id}")
def delete_selected_class(selection_id: str, decoded: dict = Depends(verify_token), db=Depends(get_db)):
    return db.delete_selected_class(selection_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 5000)))
