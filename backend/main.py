import logging
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import circulation
import config
import crud
import models
import reports
import schemas
from database import engine, Base, get_db, SessionLocal
from errors import LibraryError, NotFoundError, InvalidStateError, ValidationFailedError
from scheduler import scheduler

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def bootstrap_admin():
    """Create the default admin account if no user has that username yet."""
    db = SessionLocal()
    try:
        if crud.get_user_by_username(db, config.DEFAULT_ADMIN_USERNAME) is None:
            crud.create_user(
                db,
                schemas.UserCreate(
                    username=config.DEFAULT_ADMIN_USERNAME,
                    email=config.DEFAULT_ADMIN_EMAIL,
                    name="Administrator",
                    password=config.DEFAULT_ADMIN_PASSWORD,
                    role="admin",
                ),
                auth.hash_password(config.DEFAULT_ADMIN_PASSWORD),
            )
            logger.info("Created default admin user '%s'", config.DEFAULT_ADMIN_USERNAME)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    Base.metadata.create_all(bind=engine)
    bootstrap_admin()
    if config.SCHEDULER_ENABLED:
        logger.info("Starting reservation sweep every %s minute(s)", config.RESERVATION_SWEEP_MINUTES)
        scheduler.start()
    yield
    # --- Shutdown ---
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="Library Circulation API",
    lifespan=lifespan,
    responses={code: {"model": schemas.ErrorResponse} for code in (400, 404, 409, 422, 500)},
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth.router)


# --- Error handling ---

@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"kind": "ValidationError", "message": problems or "Invalid request", "code": "invalid_request"},
    )


HTTP_KINDS = {401: "Unauthorized", 403: "Forbidden", 404: "NotFound", 405: "MethodNotAllowed"}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"kind": HTTP_KINDS.get(exc.status_code, "HTTPError"), "message": str(exc.detail), "code": None},
        headers=getattr(exc, "headers", None),
    )


# --- Response helpers ---

def loan_out(loan: models.Loan) -> schemas.LoanResponse:
    item = schemas.LoanResponse.from_orm(loan)
    item.book_title = loan.book.title if loan.book else None
    item.user_name = loan.user.name if loan.user else None
    return item


def reservation_out(reservation: models.Reservation) -> schemas.ReservationResponse:
    item = schemas.ReservationResponse.from_orm(reservation)
    item.book_title = reservation.book.title if reservation.book else None
    item.user_name = reservation.user.name if reservation.user else None
    return item


def _found(entity, message: str, code: str):
    if entity is None:
        raise NotFoundError(message, code=code)
    return entity


# --- API Routes ---

@app.get("/api/health")
def health_check():
    return {"status": "ok", "message": "Library System is running"}


# --- Users ---

@app.get("/api/users", response_model=list[schemas.UserResponse])
def list_users(role: Optional[schemas.Role] = None, db: Session = Depends(get_db)):
    return crud.list_users(db, role=role)


@app.get("/api/users/{user_id}", response_model=schemas.UserResponse)
def get_user(user_id: int, db: Session = Depends(get_db)):
    return _found(crud.get_user(db, user_id), "User not found", "user_not_found")


@app.post("/api/users", response_model=schemas.UserResponse, status_code=201)
def create_user(user: schemas.UserCreate, db: Session = Depends(get_db)):
    return crud.create_user(db, user, auth.hash_password(user.password))


@app.patch("/api/users/{user_id}", response_model=schemas.UserResponse)
def update_user(user_id: int, user_data: schemas.UserUpdate, db: Session = Depends(get_db)):
    """Admin edits; users are deactivated rather than deleted"""
    user = _found(crud.get_user(db, user_id), "User not found", "user_not_found")

    changes = {k: v for k, v in user_data.dict(exclude_unset=True).items() if v is not None}
    password = changes.pop("password", None)
    if password:
        changes["hashed_password"] = auth.hash_password(password)
    return crud.update_user(db, user, changes)


# --- Categories ---

@app.get("/api/categories", response_model=list[schemas.CategoryResponse])
def list_categories(db: Session = Depends(get_db)):
    return crud.list_categories(db)


@app.get("/api/categories/{category_id}", response_model=schemas.CategoryResponse)
def get_category(category_id: int, db: Session = Depends(get_db)):
    return _found(crud.get_category(db, category_id), "Category not found", "category_not_found")


@app.post("/api/categories", response_model=schemas.CategoryResponse, status_code=201)
def create_category(category: schemas.CategoryCreate, db: Session = Depends(get_db)):
    return crud.create_category(db, category)


@app.patch("/api/categories/{category_id}", response_model=schemas.CategoryResponse)
def update_category(category_id: int, category_data: schemas.CategoryUpdate, db: Session = Depends(get_db)):
    category = _found(crud.get_category(db, category_id), "Category not found", "category_not_found")
    return crud.update_category(db, category, category_data.dict(exclude_unset=True))


@app.delete("/api/categories/{category_id}", response_model=schemas.MessageResponse)
def delete_category(category_id: int, db: Session = Depends(get_db)):
    category = _found(crud.get_category(db, category_id), "Category not found", "category_not_found")
    crud.delete_category(db, category)
    return {"message": "Category deleted"}


# --- Books ---

@app.get("/api/books", response_model=list[schemas.BookResponse])
def get_books(
    search: str = "",
    department: Optional[schemas.Department] = None,
    category_id: Optional[int] = None,
    tag: Optional[schemas.Tag] = None,
    db: Session = Depends(get_db),
):
    """Catalog search by title/author/ISBN with department, category and tag filters"""
    return crud.list_books(db, search=search, department=department, category_id=category_id, tag=tag)


@app.get("/api/books/{book_id}", response_model=schemas.BookResponse)
def get_book(book_id: int, db: Session = Depends(get_db)):
    return _found(crud.get_book(db, book_id), "Book not found", "book_not_found")


@app.post("/api/books", response_model=schemas.BookResponse, status_code=201)
def create_book(book: schemas.BookCreate, db: Session = Depends(get_db)):
    if book.available_copies is not None and book.available_copies > book.total_copies:
        raise ValidationFailedError("available_copies cannot exceed total_copies", code="invalid_copies")
    if book.category_id is not None:
        _found(crud.get_category(db, book.category_id), "Category not found", "category_not_found")
    return crud.create_book(db, book)


@app.patch("/api/books/{book_id}", response_model=schemas.BookResponse)
def update_book(book_id: int, book_data: schemas.BookUpdate, db: Session = Depends(get_db)):
    book = _found(crud.get_book(db, book_id), "Book not found", "book_not_found")
    changes = book_data.dict(exclude_unset=True)

    for required in ("title", "author", "department", "tag", "total_copies"):
        if required in changes and changes[required] is None:
            changes.pop(required)
    if changes.get("category_id") is not None:
        _found(crud.get_category(db, changes["category_id"]), "Category not found", "category_not_found")

    # Adding or removing copies moves availability by the same amount, applied
    # in SQL so loans committed since the read are kept
    if "total_copies" in changes:
        target = changes.pop("total_copies")
        delta = target - book.total_copies
        if delta and not crud.resize_copies(db, book.id, delta):
            raise InvalidStateError(
                f"Copies are on loan; total_copies cannot drop to {target}",
                code="copies_on_loan",
            )

    return crud.update_book(db, book, changes)


@app.delete("/api/books/{book_id}", response_model=schemas.MessageResponse)
def delete_book(book_id: int, db: Session = Depends(get_db)):
    book = _found(crud.get_book(db, book_id), "Book not found", "book_not_found")
    if crud.count_book_history(db, book_id) > 0:
        raise InvalidStateError(
            "Cannot delete a book with loan or reservation history. Set total_copies to 0 instead.",
            code="book_has_history",
        )
    crud.delete_book(db, book)
    return {"message": "Book deleted"}


# --- Loans ---

@app.get("/api/loans", response_model=list[schemas.LoanResponse])
def get_loans(
    user_id: Optional[int] = None,
    book_id: Optional[int] = None,
    status: Optional[Literal["active", "returned", "overdue"]] = None,
    db: Session = Depends(get_db),
):
    return [loan_out(loan) for loan in crud.list_loans(db, user_id=user_id, book_id=book_id, status=status)]


@app.get("/api/loans/eligibility", response_model=schemas.EligibilityResponse)
def get_loan_eligibility(user_id: int, book_id: int, db: Session = Depends(get_db)):
    """Dry run of the checks a new loan must pass"""
    decision = circulation.check_eligibility(db, user_id, book_id)
    return {"allowed": decision.allowed, "reason": decision.reason, "code": decision.code}


@app.get("/api/loans/{loan_id}", response_model=schemas.LoanResponse)
def get_loan(loan_id: int, db: Session = Depends(get_db)):
    return loan_out(circulation.get_loan_or_404(db, loan_id))


@app.post("/api/loans", response_model=schemas.LoanResponse, status_code=201)
def create_loan(request: schemas.LoanCreate, db: Session = Depends(get_db)):
    return loan_out(circulation.create_loan(db, request.user_id, request.book_id))


@app.post("/api/loans/{loan_id}/return", response_model=schemas.ReturnResponse)
def return_loan(loan_id: int, db: Session = Depends(get_db)):
    outcome = circulation.return_loan(db, loan_id)
    return {
        "message": "Book returned" if outcome.fine is None else f"Book returned {outcome.fine.days_overdue} day(s) late",
        "loan": loan_out(outcome.loan),
        "fine": outcome.fine,
        "notified_reservation": reservation_out(outcome.notified_reservation) if outcome.notified_reservation else None,
    }


@app.post("/api/loans/{loan_id}/renew", response_model=schemas.RenewResponse)
def renew_loan(loan_id: int, db: Session = Depends(get_db)):
    loan = circulation.renew_loan(db, loan_id)
    return {"message": "Loan renewed", "loan": loan_out(loan), "new_due_date": loan.due_date}


# --- Reservations ---

@app.get("/api/reservations", response_model=list[schemas.ReservationResponse])
def get_reservations(
    user_id: Optional[int] = None,
    book_id: Optional[int] = None,
    status: Optional[schemas.ReservationStatus] = None,
    db: Session = Depends(get_db),
):
    return [
        reservation_out(r)
        for r in crud.list_reservations(db, user_id=user_id, book_id=book_id, status=status)
    ]


@app.post("/api/reservations", response_model=schemas.ReservationResponse, status_code=201)
def create_reservation(request: schemas.ReservationCreate, db: Session = Depends(get_db)):
    return reservation_out(circulation.create_reservation(db, request.user_id, request.book_id))


@app.patch("/api/reservations/{reservation_id}", response_model=schemas.ReservationResponse)
def update_reservation(reservation_id: int, update: schemas.ReservationUpdate, db: Session = Depends(get_db)):
    return reservation_out(circulation.update_reservation_status(db, reservation_id, update.status))


@app.post("/api/maintenance/expire-reservations", response_model=schemas.SweepResponse)
def expire_reservations(db: Session = Depends(get_db)):
    """Run the notified-reservation expiry sweep now instead of waiting for the scheduler"""
    expired, promoted = circulation.expire_notified_reservations(db)
    return {"expired": expired, "promoted": promoted}


# --- Fines ---

@app.get("/api/fines", response_model=list[schemas.FineResponse])
def get_fines(
    user_id: Optional[int] = None,
    status: Optional[Literal["pending", "paid"]] = None,
    db: Session = Depends(get_db),
):
    return crud.list_fines(db, user_id=user_id, status=status)


@app.post("/api/fines/{fine_id}/pay", response_model=schemas.FinePaymentResponse)
def pay_fine(fine_id: int, db: Session = Depends(get_db)):
    return {"message": "Fine paid", "fine": circulation.pay_fine(db, fine_id)}


# --- Loan / Renewal requests (staff approval) ---

@app.get("/api/loan-requests", response_model=list[schemas.LoanRequestResponse])
def get_loan_requests(
    user_id: Optional[int] = None,
    status: Optional[Literal["pending", "approved", "rejected"]] = None,
    db: Session = Depends(get_db),
):
    return crud.list_loan_requests(db, user_id=user_id, status=status)


@app.post("/api/loan-requests", response_model=schemas.LoanRequestResponse, status_code=201)
def create_loan_request(request: schemas.LoanRequestCreate, db: Session = Depends(get_db)):
    return circulation.submit_loan_request(db, request)


@app.post("/api/loan-requests/{request_id}/approve", response_model=schemas.LoanRequestResponse)
def approve_loan_request(request_id: int, decision: schemas.ReviewDecision, db: Session = Depends(get_db)):
    return circulation.approve_loan_request(db, request_id, decision.reviewer_id, decision.notes)


@app.post("/api/loan-requests/{request_id}/reject", response_model=schemas.LoanRequestResponse)
def reject_loan_request(request_id: int, decision: schemas.ReviewDecision, db: Session = Depends(get_db)):
    return circulation.reject_loan_request(db, request_id, decision.reviewer_id, decision.notes)


@app.get("/api/renewal-requests", response_model=list[schemas.RenewalRequestResponse])
def get_renewal_requests(
    user_id: Optional[int] = None,
    status: Optional[Literal["pending", "approved", "rejected"]] = None,
    db: Session = Depends(get_db),
):
    return crud.list_renewal_requests(db, user_id=user_id, status=status)


@app.post("/api/renewal-requests", response_model=schemas.RenewalRequestResponse, status_code=201)
def create_renewal_request(request: schemas.RenewalRequestCreate, db: Session = Depends(get_db)):
    return circulation.submit_renewal_request(db, request)


@app.post("/api/renewal-requests/{request_id}/approve", response_model=schemas.RenewalRequestResponse)
def approve_renewal_request(request_id: int, decision: schemas.ReviewDecision, db: Session = Depends(get_db)):
    return circulation.approve_renewal_request(db, request_id, decision.reviewer_id, decision.notes)


@app.post("/api/renewal-requests/{request_id}/reject", response_model=schemas.RenewalRequestResponse)
def reject_renewal_request(request_id: int, decision: schemas.ReviewDecision, db: Session = Depends(get_db)):
    return circulation.reject_renewal_request(db, request_id, decision.reviewer_id, decision.notes)


# --- Dashboard & Reports ---

@app.get("/api/dashboard/stats", response_model=schemas.DashboardStats)
def get_dashboard_stats(db: Session = Depends(get_db)):
    return reports.dashboard_stats(db)


@app.get("/api/reports/popular-books", response_model=list[schemas.PopularBookItem])
def get_popular_books(limit: int = 10, db: Session = Depends(get_db)):
    return [{"book": book, "loan_count": count} for book, count in reports.get_popular_books(db, limit=limit)]


@app.get("/api/reports/active-users", response_model=list[schemas.ActiveUserItem])
def get_active_users(limit: int = 10, db: Session = Depends(get_db)):
    return [{"user": user, "loan_count": count} for user, count in reports.get_active_users(db, limit=limit)]


@app.get("/api/reports/overdue", response_model=list[schemas.OverdueReportItem])
def get_overdue_report(db: Session = Depends(get_db)):
    return reports.overdue_report(db)


@app.get("/api/reports/monthly-activity", response_model=list[schemas.MonthlyActivityItem])
def get_monthly_activity(db: Session = Depends(get_db)):
    return reports.monthly_activity(db)
