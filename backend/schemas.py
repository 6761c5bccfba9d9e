from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime

Role = Literal["student", "teacher", "staff", "admin"]
Tag = Literal["red", "yellow", "white"]
Department = Literal["engenharia", "ciencias-sociais", "outros"]
ReservationStatus = Literal["pending", "notified", "completed", "cancelled"]

# --- User Schemas ---

class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=200)
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=4)
    role: Role = "student"
    is_active: bool = True

class UserUpdate(BaseModel):
    email: Optional[str] = Field(None, min_length=3, max_length=200)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    password: Optional[str] = Field(None, min_length=4)
    role: Optional[Role] = None
    is_active: Optional[bool] = None

class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    name: str
    role: str
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

# --- Auth Schemas ---

class LoginRequest(BaseModel):
    username: str
    password: str

class LoginResponse(BaseModel):
    user: UserResponse

# --- Category Schemas ---

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None

class CategoryResponse(CategoryCreate):
    id: int

    class Config:
        from_attributes = True

# --- Book Schemas ---

class BookBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=1, max_length=50)
    publisher: Optional[str] = None
    year_published: Optional[int] = None
    category_id: Optional[int] = None
    department: Department = "outros"
    tag: Tag = "white"
    description: Optional[str] = None
    cover_image: Optional[str] = None

class BookCreate(BookBase):
    total_copies: int = Field(1, ge=0)
    available_copies: Optional[int] = Field(None, ge=0)  # defaults to total_copies

class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=1, max_length=50)
    publisher: Optional[str] = None
    year_published: Optional[int] = None
    category_id: Optional[int] = None
    department: Optional[Department] = None
    tag: Optional[Tag] = None
    description: Optional[str] = None
    cover_image: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=0)

class BookResponse(BookBase):
    id: int
    total_copies: int
    available_copies: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

# --- Circulation Schemas ---

class LoanCreate(BaseModel):
    user_id: int
    book_id: int

class LoanResponse(BaseModel):
    id: int
    user_id: int
    book_id: int
    loan_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: str
    renewal_count: int = 0
    is_overdue: bool = False

    # Joined fields
    book_title: Optional[str] = None
    user_name: Optional[str] = None

    class Config:
        from_attributes = True

class EligibilityResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None

class FineResponse(BaseModel):
    id: int
    loan_id: int
    user_id: int
    amount: float
    days_overdue: int
    status: str
    payment_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class ReservationCreate(BaseModel):
    user_id: int
    book_id: int

class ReservationUpdate(BaseModel):
    status: ReservationStatus

class ReservationResponse(BaseModel):
    id: int
    user_id: int
    book_id: int
    status: str
    reservation_date: datetime
    notification_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None

    book_title: Optional[str] = None
    user_name: Optional[str] = None

    class Config:
        from_attributes = True

class ReturnResponse(BaseModel):
    message: str
    loan: LoanResponse
    fine: Optional[FineResponse] = None
    notified_reservation: Optional[ReservationResponse] = None

class RenewResponse(BaseModel):
    message: str
    loan: LoanResponse
    new_due_date: datetime

class FinePaymentResponse(BaseModel):
    message: str
    fine: FineResponse

class SweepResponse(BaseModel):
    expired: int
    promoted: int

# --- Approval workflow ---

class LoanRequestCreate(BaseModel):
    user_id: int
    book_id: int
    notes: Optional[str] = None

class RenewalRequestCreate(BaseModel):
    loan_id: int
    notes: Optional[str] = None

class ReviewDecision(BaseModel):
    reviewer_id: int
    notes: Optional[str] = None

class LoanRequestResponse(BaseModel):
    id: int
    user_id: int
    book_id: int
    status: str
    request_date: datetime
    reviewed_by: Optional[int] = None
    review_date: Optional[datetime] = None
    notes: Optional[str] = None
    loan_id: Optional[int] = None

    class Config:
        from_attributes = True

class RenewalRequestResponse(BaseModel):
    id: int
    loan_id: int
    user_id: int
    status: str
    request_date: datetime
    reviewed_by: Optional[int] = None
    review_date: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True

# --- Reports ---

class DashboardStats(BaseModel):
    total_books: int
    available_books: int
    total_users: int
    active_loans: int
    overdue_loans: int
    pending_reservations: int
    pending_fines: int
    total_fines_amount: float

class PopularBookItem(BaseModel):
    book: BookResponse
    loan_count: int

class ActiveUserItem(BaseModel):
    user: UserResponse
    loan_count: int

class OverdueReportItem(BaseModel):
    loan_id: int
    book_title: str
    user_name: str
    user_email: str
    due_date: datetime
    days_overdue: int
    accrued_fine: float

class MonthlyActivityItem(BaseModel):
    month: str  # YYYY-MM
    loans: int
    returns: int
    fines_assessed: float

class MessageResponse(BaseModel):
    message: str

class ErrorResponse(BaseModel):
    kind: str
    message: str
    code: Optional[str] = None
