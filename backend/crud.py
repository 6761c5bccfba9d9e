"""Storage access layer: plain get/list/create/update/delete per entity.

No business rules live here. Entity CRUD helpers commit their own unit of
work; the ``add_*`` / ``claim_copy`` / ``release_copy`` helpers only stage
changes so ``circulation`` can commit several writes together.
"""
import logging
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from errors import StorageError, ValidationFailedError
from rules import utcnow

logger = logging.getLogger(__name__)


def commit(db: Session):
    """Commit the session, translating database failures into domain errors."""
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # Convert DB error to clear message for API layer
        msg = str(e.orig) if getattr(e, "orig", None) else str(e)
        raise ValidationFailedError(f"Constraint violated: {msg}", code="integrity_error")
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Storage failure during commit")
        raise StorageError("The database could not complete the request")


# --- User CRUD ---

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_username(db: Session, username: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.username == username).first()


def list_users(db: Session, role: Optional[str] = None) -> List[models.User]:
    query = db.query(models.User)
    if role:
        query = query.filter(models.User.role == role)
    return query.order_by(models.User.id).all()


def create_user(db: Session, data: schemas.UserCreate, hashed_password: str) -> models.User:
    # Guard against duplicates before hitting DB constraints
    if db.query(models.User).filter(models.User.username == data.username).first():
        raise ValidationFailedError("Username already registered", code="duplicate_username")
    if db.query(models.User).filter(models.User.email == data.email).first():
        raise ValidationFailedError("Email already registered", code="duplicate_email")

    user = models.User(
        username=data.username,
        email=data.email,
        name=data.name,
        hashed_password=hashed_password,
        role=data.role,
        is_active=data.is_active,
    )
    db.add(user)
    commit(db)
    db.refresh(user)
    return user


def update_user(db: Session, user: models.User, changes: dict) -> models.User:
    if "email" in changes and changes["email"] != user.email:
        if db.query(models.User).filter(models.User.email == changes["email"]).first():
            raise ValidationFailedError("Email already registered", code="duplicate_email")
    for key, value in changes.items():
        setattr(user, key, value)
    commit(db)
    db.refresh(user)
    return user


# --- Category CRUD ---

def get_category(db: Session, category_id: int) -> Optional[models.Category]:
    return db.query(models.Category).filter(models.Category.id == category_id).first()


def list_categories(db: Session) -> List[models.Category]:
    return db.query(models.Category).order_by(models.Category.name).all()


def create_category(db: Session, data: schemas.CategoryCreate) -> models.Category:
    if db.query(models.Category).filter(models.Category.name == data.name).first():
        raise ValidationFailedError("A category with this name already exists", code="duplicate_category")
    category = models.Category(name=data.name, description=data.description)
    db.add(category)
    commit(db)
    db.refresh(category)
    return category


def update_category(db: Session, category: models.Category, changes: dict) -> models.Category:
    if "name" in changes and changes["name"] != category.name:
        if db.query(models.Category).filter(models.Category.name == changes["name"]).first():
            raise ValidationFailedError("A category with this name already exists", code="duplicate_category")
    for key, value in changes.items():
        setattr(category, key, value)
    commit(db)
    db.refresh(category)
    return category


def delete_category(db: Session, category: models.Category):
    # Books keep existing, they just lose the category
    db.query(models.Book).filter(models.Book.category_id == category.id).update(
        {"category_id": None}, synchronize_session=False
    )
    db.delete(category)
    commit(db)


# --- Book CRUD ---

def get_book(db: Session, book_id: int) -> Optional[models.Book]:
    return db.query(models.Book).filter(models.Book.id == book_id).first()


def list_books(
    db: Session,
    search: Optional[str] = None,
    department: Optional[str] = None,
    category_id: Optional[int] = None,
    tag: Optional[str] = None,
) -> List[models.Book]:
    query = db.query(models.Book)
    if search:
        like = f"%{search}%"
        query = query.filter(
            (models.Book.title.ilike(like))
            | (models.Book.author.ilike(like))
            | (models.Book.isbn.ilike(like))
        )
    if department:
        query = query.filter(models.Book.department == department)
    if category_id is not None:
        query = query.filter(models.Book.category_id == category_id)
    if tag:
        query = query.filter(models.Book.tag == tag)
    return query.order_by(models.Book.title).all()


def create_book(db: Session, data: schemas.BookCreate) -> models.Book:
    if data.isbn and db.query(models.Book).filter(models.Book.isbn == data.isbn).first():
        raise ValidationFailedError("A book with this ISBN already exists", code="duplicate_isbn")

    fields = data.dict()
    if fields.get("available_copies") is None:
        fields["available_copies"] = fields["total_copies"]
    book = models.Book(**fields)
    db.add(book)
    commit(db)
    db.refresh(book)
    return book


def update_book(db: Session, book: models.Book, changes: dict) -> models.Book:
    if changes.get("isbn") and changes["isbn"] != book.isbn:
        if db.query(models.Book).filter(models.Book.isbn == changes["isbn"]).first():
            raise ValidationFailedError("A book with this ISBN already exists", code="duplicate_isbn")
    for key, value in changes.items():
        setattr(book, key, value)
    commit(db)
    db.refresh(book)
    return book


def delete_book(db: Session, book: models.Book):
    db.delete(book)
    commit(db)


def count_book_history(db: Session, book_id: int) -> int:
    loans = db.query(models.Loan).filter(models.Loan.book_id == book_id).count()
    reservations = db.query(models.Reservation).filter(models.Reservation.book_id == book_id).count()
    return loans + reservations


def claim_copy(db: Session, book_id: int) -> bool:
    """Atomically take one available copy. False when none were left."""
    rows = (
        db.query(models.Book)
        .filter(models.Book.id == book_id, models.Book.available_copies > 0)
        .update({models.Book.available_copies: models.Book.available_copies - 1}, synchronize_session=False)
    )
    return rows == 1


def release_copy(db: Session, book_id: int) -> bool:
    """Atomically put one copy back, never above total_copies."""
    rows = (
        db.query(models.Book)
        .filter(models.Book.id == book_id, models.Book.available_copies < models.Book.total_copies)
        .update({models.Book.available_copies: models.Book.available_copies + 1}, synchronize_session=False)
    )
    return rows == 1


def resize_copies(db: Session, book_id: int, delta: int) -> bool:
    """Move total and available copies together by ``delta``.

    False when availability would drop below zero, i.e. the removed copies are on loan.
    """
    rows = (
        db.query(models.Book)
        .filter(models.Book.id == book_id, models.Book.available_copies + delta >= 0)
        .update(
            {
                models.Book.total_copies: models.Book.total_copies + delta,
                models.Book.available_copies: models.Book.available_copies + delta,
            },
            synchronize_session=False,
        )
    )
    return rows == 1


# --- Loan CRUD ---

def get_loan(db: Session, loan_id: int) -> Optional[models.Loan]:
    return db.query(models.Loan).filter(models.Loan.id == loan_id).first()


def list_loans(
    db: Session,
    user_id: Optional[int] = None,
    book_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[models.Loan]:
    query = db.query(models.Loan)
    if user_id is not None:
        query = query.filter(models.Loan.user_id == user_id)
    if book_id is not None:
        query = query.filter(models.Loan.book_id == book_id)
    if status == "overdue":
        query = query.filter(models.Loan.status == "active", models.Loan.due_date < utcnow())
    elif status:
        query = query.filter(models.Loan.status == status)
    return query.order_by(models.Loan.loan_date.desc(), models.Loan.id.desc()).all()


def active_loans_for_user(db: Session, user_id: int) -> List[models.Loan]:
    return db.query(models.Loan).filter(
        models.Loan.user_id == user_id,
        models.Loan.status == "active",
    ).all()


def add_loan(db: Session, user_id: int, book_id: int, loan_date, due_date) -> models.Loan:
    loan = models.Loan(
        user_id=user_id,
        book_id=book_id,
        loan_date=loan_date,
        due_date=due_date,
        status="active",
        renewal_count=0,
    )
    db.add(loan)
    db.flush()
    return loan


def close_loan(db: Session, loan_id: int, return_date) -> bool:
    """Atomically mark an active loan returned. False when it was already closed."""
    rows = (
        db.query(models.Loan)
        .filter(models.Loan.id == loan_id, models.Loan.status == "active")
        .update(
            {models.Loan.status: "returned", models.Loan.return_date: return_date},
            synchronize_session=False,
        )
    )
    return rows == 1


# --- Reservation CRUD ---

def get_reservation(db: Session, reservation_id: int) -> Optional[models.Reservation]:
    return db.query(models.Reservation).filter(models.Reservation.id == reservation_id).first()


def list_reservations(
    db: Session,
    user_id: Optional[int] = None,
    book_id: Optional[int] = None,
    status: Optional[str] = None,
) -> List[models.Reservation]:
    query = db.query(models.Reservation)
    if user_id is not None:
        query = query.filter(models.Reservation.user_id == user_id)
    if book_id is not None:
        query = query.filter(models.Reservation.book_id == book_id)
    if status:
        query = query.filter(models.Reservation.status == status)
    return query.order_by(models.Reservation.reservation_date.asc(), models.Reservation.id.asc()).all()


def active_reservations_for_user(db: Session, user_id: int) -> List[models.Reservation]:
    return db.query(models.Reservation).filter(
        models.Reservation.user_id == user_id,
        models.Reservation.status.in_(["pending", "notified"]),
    ).all()


def active_reservations_for_book(db: Session, book_id: int) -> List[models.Reservation]:
    return db.query(models.Reservation).filter(
        models.Reservation.book_id == book_id,
        models.Reservation.status.in_(["pending", "notified"]),
    ).all()


def oldest_pending_reservation(db: Session, book_id: int) -> Optional[models.Reservation]:
    return db.query(models.Reservation).filter(
        models.Reservation.book_id == book_id,
        models.Reservation.status == "pending",
    ).order_by(models.Reservation.reservation_date.asc(), models.Reservation.id.asc()).first()


def expired_notified_reservations(db: Session, now) -> List[models.Reservation]:
    return db.query(models.Reservation).filter(
        models.Reservation.status == "notified",
        models.Reservation.expiration_date < now,
    ).order_by(models.Reservation.expiration_date.asc()).all()


def notify_reservation(db: Session, reservation_id: int, notified_at, expires_at) -> bool:
    """Atomically move a pending reservation to notified. False when it already left the queue."""
    rows = (
        db.query(models.Reservation)
        .filter(models.Reservation.id == reservation_id, models.Reservation.status == "pending")
        .update(
            {
                models.Reservation.status: "notified",
                models.Reservation.notification_date: notified_at,
                models.Reservation.expiration_date: expires_at,
            },
            synchronize_session=False,
        )
    )
    return rows == 1


def add_reservation(db: Session, user_id: int, book_id: int, reservation_date) -> models.Reservation:
    reservation = models.Reservation(
        user_id=user_id,
        book_id=book_id,
        status="pending",
        reservation_date=reservation_date,
    )
    db.add(reservation)
    db.flush()
    return reservation


# --- Fine CRUD ---

def get_fine(db: Session, fine_id: int) -> Optional[models.Fine]:
    return db.query(models.Fine).filter(models.Fine.id == fine_id).first()


def list_fines(db: Session, user_id: Optional[int] = None, status: Optional[str] = None) -> List[models.Fine]:
    query = db.query(models.Fine)
    if user_id is not None:
        query = query.filter(models.Fine.user_id == user_id)
    if status:
        query = query.filter(models.Fine.status == status)
    return query.order_by(models.Fine.created_at.desc(), models.Fine.id.desc()).all()


def pending_fine_total(db: Session, user_id: int) -> float:
    total = db.query(func.sum(models.Fine.amount)).filter(
        models.Fine.user_id == user_id,
        models.Fine.status == "pending",
    ).scalar()
    return float(total or 0.0)


def add_fine(db: Session, loan: models.Loan, amount: float, days_overdue: int, created_at) -> models.Fine:
    fine = models.Fine(
        loan_id=loan.id,
        user_id=loan.user_id,
        amount=amount,
        days_overdue=days_overdue,
        status="pending",
        created_at=created_at,
    )
    db.add(fine)
    db.flush()
    return fine


# --- Loan / Renewal request CRUD ---

def get_loan_request(db: Session, request_id: int) -> Optional[models.LoanRequest]:
    return db.query(models.LoanRequest).filter(models.LoanRequest.id == request_id).first()


def list_loan_requests(db: Session, user_id: Optional[int] = None, status: Optional[str] = None):
    query = db.query(models.LoanRequest)
    if user_id is not None:
        query = query.filter(models.LoanRequest.user_id == user_id)
    if status:
        query = query.filter(models.LoanRequest.status == status)
    return query.order_by(models.LoanRequest.request_date.asc(), models.LoanRequest.id.asc()).all()


def create_loan_request(db: Session, data: schemas.LoanRequestCreate, request_date) -> models.LoanRequest:
    request = models.LoanRequest(
        user_id=data.user_id,
        book_id=data.book_id,
        notes=data.notes,
        status="pending",
        request_date=request_date,
    )
    db.add(request)
    commit(db)
    db.refresh(request)
    return request


def get_renewal_request(db: Session, request_id: int) -> Optional[models.RenewalRequest]:
    return db.query(models.RenewalRequest).filter(models.RenewalRequest.id == request_id).first()


def list_renewal_requests(db: Session, user_id: Optional[int] = None, status: Optional[str] = None):
    query = db.query(models.RenewalRequest)
    if user_id is not None:
        query = query.filter(models.RenewalRequest.user_id == user_id)
    if status:
        query = query.filter(models.RenewalRequest.status == status)
    return query.order_by(models.RenewalRequest.request_date.asc(), models.RenewalRequest.id.asc()).all()


def create_renewal_request(db: Session, loan: models.Loan, notes: Optional[str], request_date) -> models.RenewalRequest:
    request = models.RenewalRequest(
        loan_id=loan.id,
        user_id=loan.user_id,
        notes=notes,
        status="pending",
        request_date=request_date,
    )
    db.add(request)
    commit(db)
    db.refresh(request)
    return request


@contextmanager
def transaction(db: Session):
    """Commit once on success, roll back on any failure."""
    try:
        yield db
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Storage failure")
        raise StorageError("The database could not complete the request")
    except Exception:
        db.rollback()
        raise
    commit(db)
