"""Loan, reservation and fine workflows.

Each public function loads what it needs, asks ``rules`` for a decision and
applies every resulting write in a single transaction. ``now`` can be passed
in so tests can pin the clock.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

import config
import crud
import models
import rules
from errors import InvalidStateError, NotFoundError, RuleViolationError

logger = logging.getLogger(__name__)

REVIEWER_ROLES = ("staff", "admin")

# Allowed manual reservation transitions
RESERVATION_TRANSITIONS = {
    "pending": ("notified", "cancelled"),
    "notified": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}


@dataclass
class ReturnOutcome:
    loan: models.Loan
    fine: Optional[models.Fine] = None
    notified_reservation: Optional[models.Reservation] = None


# --- Lookups ---

def _require(entity, label: str, entity_id: int):
    if entity is None:
        raise NotFoundError(f"{label} {entity_id} not found", code=f"{label.lower().replace(' ', '_')}_not_found")
    return entity


def get_loan_or_404(db: Session, loan_id: int) -> models.Loan:
    return _require(crud.get_loan(db, loan_id), "Loan", loan_id)


# --- Eligibility ---

def check_eligibility(db: Session, user_id: int, book_id: int) -> rules.Eligibility:
    """Read-only loan eligibility for ``user_id`` borrowing ``book_id``."""
    user = crud.get_user(db, user_id)
    book = crud.get_book(db, book_id)
    if user is None or book is None:
        return rules.check_loan_eligibility(user, book, [], 0.0)

    active_loans = crud.active_loans_for_user(db, user.id)
    fines_total = crud.pending_fine_total(db, user.id)
    return rules.check_loan_eligibility(user, book, active_loans, fines_total)


def _raise_denial(decision: rules.Eligibility):
    if decision.code in ("user_not_found", "book_not_found"):
        raise NotFoundError(decision.reason, code=decision.code)
    raise RuleViolationError(decision.reason, code=decision.code)


# --- Loans ---

def _stage_loan(db: Session, user_id: int, book_id: int, now: datetime) -> models.Loan:
    decision = check_eligibility(db, user_id, book_id)
    if not decision.allowed:
        _raise_denial(decision)

    user = crud.get_user(db, user_id)
    book = crud.get_book(db, book_id)

    # The eligibility read may already be stale; the conditional decrement is
    # what actually guarantees the copy.
    if not crud.claim_copy(db, book.id):
        raise RuleViolationError("No copies of this book are available", code="no_copies_available")

    due_date = rules.calculate_due_date(user.role, book.tag, now)
    loan = crud.add_loan(db, user.id, book.id, loan_date=now, due_date=due_date)

    # Picking up a reserved book closes the reservation
    for reservation in crud.active_reservations_for_book(db, book.id):
        if reservation.user_id == user.id:
            reservation.status = "completed"

    return loan


def create_loan(db: Session, user_id: int, book_id: int, now: Optional[datetime] = None) -> models.Loan:
    now = now or rules.utcnow()
    with crud.transaction(db):
        loan = _stage_loan(db, user_id, book_id, now)
    db.refresh(loan)
    logger.info("Loan %s created: user=%s book=%s due=%s", loan.id, user_id, book_id, loan.due_date)
    return loan


def _promote_next_reservation(db: Session, book_id: int, now: datetime) -> Optional[models.Reservation]:
    """Notify the oldest pending reservation for ``book_id``.

    Promotion is advisory: availability is not touched. A row another writer
    moved out of the queue first is skipped and the next one is tried.
    """
    expires_at = rules.pickup_deadline(now)
    while True:
        reservation = crud.oldest_pending_reservation(db, book_id)
        if reservation is None:
            return None
        claimed = crud.notify_reservation(db, reservation.id, now, expires_at)
        db.expire(reservation)
        if claimed:
            logger.info(
                "Reservation %s notified: user=%s book=%s expires=%s",
                reservation.id, reservation.user_id, book_id, expires_at,
            )
            return reservation


def return_loan(db: Session, loan_id: int, now: Optional[datetime] = None) -> ReturnOutcome:
    now = now or rules.utcnow()
    with crud.transaction(db):
        loan = get_loan_or_404(db, loan_id)

        # 1. Close the loan; of two concurrent returns only one gets past here
        if not crud.close_loan(db, loan.id, now):
            raise InvalidStateError("Loan has already been returned", code="loan_not_active")
        db.expire(loan)

        # 2. Fine for late returns
        fine = None
        amount, days_overdue = rules.calculate_fine(loan.due_date, now)
        if amount > 0:
            fine = crud.add_fine(db, loan, amount, days_overdue, created_at=now)

        # 3. Copy goes back on the shelf
        if not crud.release_copy(db, loan.book_id):
            logger.warning("Book %s already at total_copies when loan %s was returned", loan.book_id, loan.id)

        # 4. Hand off to the reservation queue
        promoted = _promote_next_reservation(db, loan.book_id, now)

    db.refresh(loan)
    if fine is not None:
        db.refresh(fine)
        logger.info("Loan %s returned %s day(s) late, fine %s created (%.2f)", loan.id, days_overdue, fine.id, amount)
    else:
        logger.info("Loan %s returned on time", loan.id)
    if promoted is not None:
        db.refresh(promoted)
    return ReturnOutcome(loan=loan, fine=fine, notified_reservation=promoted)


def _stage_renewal(db: Session, loan: models.Loan, now: datetime) -> models.Loan:
    if loan.status != "active":
        raise InvalidStateError("Only active loans can be renewed", code="loan_not_active")

    reservations = crud.active_reservations_for_book(db, loan.book_id)
    fines_total = crud.pending_fine_total(db, loan.user_id)
    blocked = rules.renewal_block(loan, loan.user_id, reservations, fines_total)
    if blocked is not None:
        raise RuleViolationError(blocked.reason, code=blocked.code)

    user = _require(crud.get_user(db, loan.user_id), "User", loan.user_id)
    book = _require(crud.get_book(db, loan.book_id), "Book", loan.book_id)

    loan.due_date = rules.calculate_due_date(user.role, book.tag, now)
    loan.renewal_count += 1
    return loan


def renew_loan(db: Session, loan_id: int, now: Optional[datetime] = None) -> models.Loan:
    now = now or rules.utcnow()
    with crud.transaction(db):
        loan = get_loan_or_404(db, loan_id)
        _stage_renewal(db, loan, now)
    db.refresh(loan)
    logger.info("Loan %s renewed (%s/%s), due %s", loan.id, loan.renewal_count, config.MAX_RENEWALS, loan.due_date)
    return loan


# --- Fines ---

def pay_fine(db: Session, fine_id: int, now: Optional[datetime] = None) -> models.Fine:
    now = now or rules.utcnow()
    with crud.transaction(db):
        fine = _require(crud.get_fine(db, fine_id), "Fine", fine_id)
        if fine.status == "paid":
            raise InvalidStateError("This fine has already been paid", code="fine_already_paid")
        fine.status = "paid"
        fine.payment_date = now
    db.refresh(fine)
    logger.info("Fine %s paid (%.2f)", fine.id, fine.amount)
    return fine


# --- Reservations ---

def create_reservation(db: Session, user_id: int, book_id: int, now: Optional[datetime] = None) -> models.Reservation:
    now = now or rules.utcnow()
    with crud.transaction(db):
        _require(crud.get_user(db, user_id), "User", user_id)
        _require(crud.get_book(db, book_id), "Book", book_id)

        active = crud.active_reservations_for_user(db, user_id)
        blocked = rules.reservation_block(book_id, active)
        if blocked is not None:
            raise RuleViolationError(blocked.reason, code=blocked.code)

        reservation = crud.add_reservation(db, user_id, book_id, reservation_date=now)
    db.refresh(reservation)
    logger.info("Reservation %s created: user=%s book=%s", reservation.id, user_id, book_id)
    return reservation


def _hand_off(db: Session, book_id: int, now: datetime) -> Optional[models.Reservation]:
    """Offer a freed-up hold to the next in line, if a copy is still on the shelf."""
    book = crud.get_book(db, book_id)
    if book is None or book.available_copies <= 0:
        return None
    return _promote_next_reservation(db, book_id, now)


def update_reservation_status(
    db: Session, reservation_id: int, status: str, now: Optional[datetime] = None
) -> models.Reservation:
    now = now or rules.utcnow()
    with crud.transaction(db):
        reservation = _require(crud.get_reservation(db, reservation_id), "Reservation", reservation_id)
        current = reservation.status
        if status not in RESERVATION_TRANSITIONS.get(current, ()):
            raise InvalidStateError(
                f"Reservation cannot move from '{current}' to '{status}'",
                code="invalid_reservation_transition",
            )

        reservation.status = status
        if status == "notified":
            reservation.notification_date = now
            reservation.expiration_date = rules.pickup_deadline(now)
        elif status == "cancelled" and current == "notified":
            db.flush()
            _hand_off(db, reservation.book_id, now)

    db.refresh(reservation)
    logger.info("Reservation %s: %s -> %s", reservation.id, current, status)
    return reservation


def expire_notified_reservations(db: Session, now: Optional[datetime] = None) -> tuple:
    """Cancel notified reservations past their pickup window and re-offer the copy.

    Returns ``(expired, promoted)`` counts.
    """
    now = now or rules.utcnow()
    expired = promoted = 0
    with crud.transaction(db):
        for reservation in crud.expired_notified_reservations(db, now):
            reservation.status = "cancelled"
            expired += 1
            db.flush()
            if _hand_off(db, reservation.book_id, now) is not None:
                promoted += 1
    if expired:
        logger.info("Expired %s notified reservation(s), promoted %s", expired, promoted)
    return expired, promoted


# --- Staff-mediated requests ---

def _require_reviewer(db: Session, reviewer_id: int) -> models.User:
    reviewer = _require(crud.get_user(db, reviewer_id), "User", reviewer_id)
    if reviewer.role not in REVIEWER_ROLES or not reviewer.is_active:
        raise RuleViolationError("Only active staff or admins can review requests", code="reviewer_not_allowed")
    return reviewer


def _close_request(request, reviewer: models.User, status: str, notes: Optional[str], now: datetime):
    request.status = status
    request.reviewed_by = reviewer.id
    request.review_date = now
    if notes is not None:
        request.notes = notes


def _require_pending(request, label: str):
    if request.status != "pending":
        raise InvalidStateError(f"{label} has already been {request.status}", code="request_not_pending")


def submit_loan_request(db: Session, data, now: Optional[datetime] = None) -> models.LoanRequest:
    now = now or rules.utcnow()
    _require(crud.get_user(db, data.user_id), "User", data.user_id)
    _require(crud.get_book(db, data.book_id), "Book", data.book_id)
    return crud.create_loan_request(db, data, request_date=now)


def approve_loan_request(
    db: Session, request_id: int, reviewer_id: int, notes: Optional[str] = None, now: Optional[datetime] = None
) -> models.LoanRequest:
    """Approving runs the same checks and effects as a direct loan."""
    now = now or rules.utcnow()
    with crud.transaction(db):
        request = _require(crud.get_loan_request(db, request_id), "Loan request", request_id)
        _require_pending(request, "Loan request")
        reviewer = _require_reviewer(db, reviewer_id)
        loan = _stage_loan(db, request.user_id, request.book_id, now)
        _close_request(request, reviewer, "approved", notes, now)
        request.loan_id = loan.id
    db.refresh(request)
    logger.info("Loan request %s approved by %s, loan %s", request.id, reviewer_id, request.loan_id)
    return request


def reject_loan_request(
    db: Session, request_id: int, reviewer_id: int, notes: Optional[str] = None, now: Optional[datetime] = None
) -> models.LoanRequest:
    now = now or rules.utcnow()
    with crud.transaction(db):
        request = _require(crud.get_loan_request(db, request_id), "Loan request", request_id)
        _require_pending(request, "Loan request")
        reviewer = _require_reviewer(db, reviewer_id)
        _close_request(request, reviewer, "rejected", notes, now)
    db.refresh(request)
    return request


def submit_renewal_request(db: Session, data, now: Optional[datetime] = None) -> models.RenewalRequest:
    now = now or rules.utcnow()
    loan = get_loan_or_404(db, data.loan_id)
    if loan.status != "active":
        raise InvalidStateError("Only active loans can be renewed", code="loan_not_active")
    return crud.create_renewal_request(db, loan, data.notes, request_date=now)


def approve_renewal_request(
    db: Session, request_id: int, reviewer_id: int, notes: Optional[str] = None, now: Optional[datetime] = None
) -> models.RenewalRequest:
    now = now or rules.utcnow()
    with crud.transaction(db):
        request = _require(crud.get_renewal_request(db, request_id), "Renewal request", request_id)
        _require_pending(request, "Renewal request")
        reviewer = _require_reviewer(db, reviewer_id)
        loan = get_loan_or_404(db, request.loan_id)
        _stage_renewal(db, loan, now)
        _close_request(request, reviewer, "approved", notes, now)
    db.refresh(request)
    logger.info("Renewal request %s approved by %s", request.id, reviewer_id)
    return request


def reject_renewal_request(
    db: Session, request_id: int, reviewer_id: int, notes: Optional[str] = None, now: Optional[datetime] = None
) -> models.RenewalRequest:
    now = now or rules.utcnow()
    with crud.transaction(db):
        request = _require(crud.get_renewal_request(db, request_id), "Renewal request", request_id)
        _require_pending(request, "Renewal request")
        reviewer = _require_reviewer(db, reviewer_id)
        _close_request(request, reviewer, "rejected", notes, now)
    db.refresh(request)
    return request
