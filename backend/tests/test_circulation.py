from datetime import datetime, timedelta

import pytest

import circulation
import config
import crud
import models
import schemas
from errors import InvalidStateError, NotFoundError, RuleViolationError

NOW = datetime(2026, 3, 10, 12, 0, 0)


def add_pending_fine(db, user, book, amount):
    loan = models.Loan(
        user_id=user.id,
        book_id=book.id,
        loan_date=NOW - timedelta(days=30),
        due_date=NOW - timedelta(days=25),
        return_date=NOW - timedelta(days=20),
        status="returned",
    )
    db.add(loan)
    db.commit()
    fine = models.Fine(loan_id=loan.id, user_id=user.id, amount=amount, days_overdue=int(amount // config.FINE_PER_DAY))
    db.add(fine)
    db.commit()
    return fine


# --- Loans ---

def test_reserve_then_borrow(db, make_user, make_book):
    alice = make_user("student")
    book = make_book(title="Dune", tag="white", copies=1)

    reservation = circulation.create_reservation(db, alice.id, book.id, now=NOW)
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)

    assert loan.status == "active"
    assert loan.due_date == NOW + timedelta(days=5)
    assert loan.renewal_count == 0
    db.refresh(book)
    db.refresh(reservation)
    assert book.available_copies == 0
    assert reservation.status == "completed"


def test_teacher_gets_longer_white_tag_loan(db, make_user, make_book):
    teacher = make_user("teacher")
    book = make_book(tag="white")
    loan = circulation.create_loan(db, teacher.id, book.id, now=NOW)
    assert loan.due_date == NOW + timedelta(days=15)


def test_red_book_is_never_loaned(db, make_user, make_book):
    alice = make_user()
    book = make_book(tag="red", copies=2)

    with pytest.raises(RuleViolationError) as exc:
        circulation.create_loan(db, alice.id, book.id, now=NOW)

    assert exc.value.code == "library_use_only"
    db.refresh(book)
    assert book.available_copies == 2
    assert db.query(models.Loan).count() == 0


def test_missing_user_or_book_is_not_found(db, make_user, make_book):
    alice = make_user()
    book = make_book()
    with pytest.raises(NotFoundError):
        circulation.create_loan(db, 999, book.id, now=NOW)
    with pytest.raises(NotFoundError) as exc:
        circulation.create_loan(db, alice.id, 999, now=NOW)
    assert exc.value.code == "book_not_found"


def test_pending_fines_at_threshold_block_loans(db, make_user, make_book):
    bob = make_user()
    old = make_book(title="Old Book")
    add_pending_fine(db, bob, old, config.FINE_BLOCK_THRESHOLD)
    book = make_book(title="New Book")

    with pytest.raises(RuleViolationError) as exc:
        circulation.create_loan(db, bob.id, book.id, now=NOW)
    assert exc.value.code == "fines_blocking"


def test_student_loan_limit(db, make_user, make_book):
    alice = make_user()
    books = [make_book(title=f"Book {i}") for i in range(3)]
    circulation.create_loan(db, alice.id, books[0].id, now=NOW)
    circulation.create_loan(db, alice.id, books[1].id, now=NOW)

    with pytest.raises(RuleViolationError) as exc:
        circulation.create_loan(db, alice.id, books[2].id, now=NOW)
    assert exc.value.code == "loan_limit"


def test_late_return_creates_fine(db, make_user, make_book):
    alice = make_user()
    book = make_book(tag="white", copies=1)
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)

    returned_at = loan.due_date + timedelta(days=2, hours=3)
    outcome = circulation.return_loan(db, loan.id, now=returned_at)

    assert outcome.loan.status == "returned"
    assert outcome.loan.return_date == returned_at
    assert outcome.fine is not None
    assert outcome.fine.days_overdue == 2
    assert outcome.fine.amount == 2 * config.FINE_PER_DAY
    assert outcome.fine.status == "pending"
    assert outcome.notified_reservation is None
    db.refresh(book)
    assert book.available_copies == 1


def test_on_time_return_has_no_fine(db, make_user, make_book):
    alice = make_user()
    book = make_book()
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    outcome = circulation.return_loan(db, loan.id, now=NOW + timedelta(days=1))
    assert outcome.fine is None
    assert db.query(models.Fine).count() == 0


def test_returning_twice_is_invalid(db, make_user, make_book):
    alice = make_user()
    book = make_book()
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    circulation.return_loan(db, loan.id, now=NOW)

    with pytest.raises(InvalidStateError):
        circulation.return_loan(db, loan.id, now=NOW)
    db.refresh(book)
    assert book.available_copies == 1


def test_return_notifies_oldest_pending_reservation(db, make_user, make_book):
    alice, charlie, david = make_user(), make_user(), make_user()
    book = make_book(title="1984", copies=1)
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    first = circulation.create_reservation(db, charlie.id, book.id, now=NOW + timedelta(hours=1))
    second = circulation.create_reservation(db, david.id, book.id, now=NOW + timedelta(hours=2))

    returned_at = NOW + timedelta(days=3)
    outcome = circulation.return_loan(db, loan.id, now=returned_at)

    assert outcome.notified_reservation.id == first.id
    db.refresh(first)
    db.refresh(second)
    db.refresh(book)
    assert first.status == "notified"
    assert first.notification_date == returned_at
    assert first.expiration_date == returned_at + timedelta(hours=48)
    assert second.status == "pending"
    # The notified user still has to borrow the copy
    assert book.available_copies == 1


def test_last_copy_goes_to_one_borrower(db, session_factory, make_user, make_book):
    # Single-threaded interleaving: `db` keeps the book row it read before the
    # other session commits, so its eligibility check passes on a stale
    # available_copies and only the conditional decrement can refuse. Real
    # thread-level contention is left to the database's row locking.
    alice, bob = make_user(), make_user()
    book = make_book(copies=1)
    assert book.available_copies == 1

    other = session_factory()
    try:
        circulation.create_loan(other, alice.id, book.id, now=NOW)
    finally:
        other.close()

    with pytest.raises(RuleViolationError) as exc:
        circulation.create_loan(db, bob.id, book.id, now=NOW)

    assert exc.value.code == "no_copies_available"
    db.expire_all()
    assert db.query(models.Loan).count() == 1
    assert db.get(models.Book, book.id).available_copies == 0


def test_concurrent_returns_close_the_loan_once(db, session_factory, make_user, make_book):
    alice, bob = make_user(), make_user()
    book = make_book(copies=3)
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    circulation.create_loan(db, bob.id, book.id, now=NOW)
    assert loan.status == "active"
    late = loan.due_date + timedelta(days=10)

    # Another session returns the loan while ours still sees it active
    other = session_factory()
    try:
        circulation.return_loan(other, loan.id, now=late)
    finally:
        other.close()

    with pytest.raises(InvalidStateError) as exc:
        circulation.return_loan(db, loan.id, now=late)

    assert exc.value.code == "loan_not_active"
    db.expire_all()
    assert db.query(models.Fine).count() == 1
    assert db.query(models.Loan).filter(models.Loan.status == "active").count() == 1
    assert db.get(models.Book, book.id).available_copies == 2


def test_reservation_left_the_queue_is_not_notified(db, session_factory, make_user, make_book):
    charlie = make_user()
    book = make_book()
    reservation = circulation.create_reservation(db, charlie.id, book.id, now=NOW)
    assert reservation.status == "pending"

    other = session_factory()
    try:
        circulation.update_reservation_status(other, reservation.id, "cancelled", now=NOW)
    finally:
        other.close()

    assert not crud.notify_reservation(db, reservation.id, NOW, NOW + timedelta(hours=48))
    db.rollback()
    db.refresh(reservation)
    assert reservation.status == "cancelled"
    assert reservation.notification_date is None


def test_availability_stays_in_bounds(db, make_user, make_book):
    users = [make_user() for _ in range(3)]
    book = make_book(copies=2)

    loans = [circulation.create_loan(db, u.id, book.id, now=NOW) for u in users[:2]]
    with pytest.raises(RuleViolationError):
        circulation.create_loan(db, users[2].id, book.id, now=NOW)
    for loan in loans:
        circulation.return_loan(db, loan.id, now=NOW)

    db.refresh(book)
    assert book.available_copies == book.total_copies == 2


# --- Renewals ---

def test_renewal_recomputes_due_date_from_now(db, make_user, make_book):
    teacher = make_user("teacher")
    book = make_book()
    loan = circulation.create_loan(db, teacher.id, book.id, now=NOW)

    renewed_at = NOW + timedelta(days=3)
    loan = circulation.renew_loan(db, loan.id, now=renewed_at)
    assert loan.due_date == renewed_at + timedelta(days=15)
    assert loan.renewal_count == 1


def test_renewal_cap(db, make_user, make_book):
    alice = make_user()
    book = make_book()
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    for _ in range(config.MAX_RENEWALS):
        loan = circulation.renew_loan(db, loan.id, now=NOW)

    with pytest.raises(RuleViolationError) as exc:
        circulation.renew_loan(db, loan.id, now=NOW)
    assert exc.value.code == "renewal_limit"
    db.refresh(loan)
    assert loan.renewal_count == config.MAX_RENEWALS


def test_renewal_blocked_when_someone_else_is_waiting(db, make_user, make_book):
    alice, charlie = make_user(), make_user()
    book = make_book()
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    circulation.create_reservation(db, charlie.id, book.id, now=NOW)

    with pytest.raises(RuleViolationError) as exc:
        circulation.renew_loan(db, loan.id, now=NOW)
    assert exc.value.code == "reserved_by_other"


def test_any_pending_fine_blocks_renewal(db, make_user, make_book):
    alice = make_user()
    old = make_book(title="Old")
    book = make_book(title="Current")
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    add_pending_fine(db, alice, old, config.FINE_PER_DAY)

    with pytest.raises(RuleViolationError) as exc:
        circulation.renew_loan(db, loan.id, now=NOW)
    assert exc.value.code == "fines_pending"


def test_returned_loan_cannot_be_renewed(db, make_user, make_book):
    alice = make_user()
    book = make_book()
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    circulation.return_loan(db, loan.id, now=NOW)
    with pytest.raises(InvalidStateError):
        circulation.renew_loan(db, loan.id, now=NOW)


# --- Fines ---

def test_pay_fine(db, make_user, make_book):
    bob = make_user()
    book = make_book()
    fine = add_pending_fine(db, bob, book, 1500.0)

    paid = circulation.pay_fine(db, fine.id, now=NOW)
    assert paid.status == "paid"
    assert paid.payment_date == NOW

    with pytest.raises(InvalidStateError):
        circulation.pay_fine(db, fine.id, now=NOW)
    with pytest.raises(NotFoundError):
        circulation.pay_fine(db, 999, now=NOW)


def test_paying_fines_unblocks_borrowing(db, make_user, make_book):
    bob = make_user()
    old = make_book(title="Old")
    fine = add_pending_fine(db, bob, old, 2500.0)
    book = make_book(title="New")

    assert circulation.check_eligibility(db, bob.id, book.id).code == "fines_blocking"
    circulation.pay_fine(db, fine.id, now=NOW)
    assert circulation.check_eligibility(db, bob.id, book.id).allowed


# --- Reservations ---

def test_reservation_limit_and_duplicates(db, make_user, make_book):
    alice = make_user()
    books = [make_book(title=f"Book {i}") for i in range(config.MAX_RESERVATIONS_PER_USER + 1)]
    for book in books[:-1]:
        circulation.create_reservation(db, alice.id, book.id, now=NOW)

    with pytest.raises(RuleViolationError) as exc:
        circulation.create_reservation(db, alice.id, books[0].id, now=NOW)
    assert exc.value.code == "reservation_limit"

    with pytest.raises(RuleViolationError) as exc:
        circulation.create_reservation(db, alice.id, books[-1].id, now=NOW)
    assert exc.value.code == "reservation_limit"


def test_duplicate_reservation(db, make_user, make_book):
    alice = make_user()
    book = make_book()
    circulation.create_reservation(db, alice.id, book.id, now=NOW)
    with pytest.raises(RuleViolationError) as exc:
        circulation.create_reservation(db, alice.id, book.id, now=NOW)
    assert exc.value.code == "duplicate_reservation"


def test_reservation_transitions(db, make_user, make_book):
    alice = make_user()
    book = make_book()
    reservation = circulation.create_reservation(db, alice.id, book.id, now=NOW)

    with pytest.raises(InvalidStateError):
        circulation.update_reservation_status(db, reservation.id, "completed", now=NOW)

    reservation = circulation.update_reservation_status(db, reservation.id, "notified", now=NOW)
    assert reservation.expiration_date == NOW + timedelta(hours=config.RESERVATION_PICKUP_HOURS)
    reservation = circulation.update_reservation_status(db, reservation.id, "completed", now=NOW)

    for target in ("pending", "notified", "cancelled"):
        with pytest.raises(InvalidStateError):
            circulation.update_reservation_status(db, reservation.id, target, now=NOW)


def test_cancelling_notified_hold_offers_copy_to_next(db, make_user, make_book):
    charlie, david = make_user(), make_user()
    book = make_book(copies=1)
    first = circulation.create_reservation(db, charlie.id, book.id, now=NOW)
    second = circulation.create_reservation(db, david.id, book.id, now=NOW + timedelta(minutes=5))
    circulation.update_reservation_status(db, first.id, "notified", now=NOW)

    circulation.update_reservation_status(db, first.id, "cancelled", now=NOW + timedelta(hours=1))
    db.refresh(second)
    assert second.status == "notified"


def test_expiry_sweep(db, make_user, make_book):
    charlie, david = make_user(), make_user()
    book = make_book(copies=1)
    first = circulation.create_reservation(db, charlie.id, book.id, now=NOW)
    second = circulation.create_reservation(db, david.id, book.id, now=NOW + timedelta(minutes=5))
    circulation.update_reservation_status(db, first.id, "notified", now=NOW)

    assert circulation.expire_notified_reservations(db, now=NOW + timedelta(hours=47)) == (0, 0)

    swept_at = NOW + timedelta(hours=49)
    assert circulation.expire_notified_reservations(db, now=swept_at) == (1, 1)
    db.refresh(first)
    db.refresh(second)
    assert first.status == "cancelled"
    assert second.status == "notified"
    assert second.expiration_date == swept_at + timedelta(hours=48)


def test_expired_hold_is_not_reoffered_without_a_copy(db, make_user, make_book):
    alice, charlie, david = make_user(), make_user(), make_user()
    book = make_book(copies=1)
    first = circulation.create_reservation(db, charlie.id, book.id, now=NOW)
    second = circulation.create_reservation(db, david.id, book.id, now=NOW + timedelta(minutes=5))
    circulation.update_reservation_status(db, first.id, "notified", now=NOW)
    circulation.create_loan(db, alice.id, book.id, now=NOW + timedelta(hours=1))

    assert circulation.expire_notified_reservations(db, now=NOW + timedelta(days=3)) == (1, 0)
    db.refresh(second)
    assert second.status == "pending"


# --- Staff-mediated requests ---

def test_approving_loan_request_creates_loan(db, make_user, make_book):
    alice, linda = make_user(), make_user("staff")
    book = make_book()
    request = circulation.submit_loan_request(
        db, schemas.LoanRequestCreate(user_id=alice.id, book_id=book.id), now=NOW
    )
    assert request.status == "pending"

    request = circulation.approve_loan_request(db, request.id, linda.id, notes="ok", now=NOW)
    assert request.status == "approved"
    assert request.reviewed_by == linda.id
    assert request.notes == "ok"
    loan = db.get(models.Loan, request.loan_id)
    assert loan.user_id == alice.id
    assert loan.status == "active"

    with pytest.raises(InvalidStateError):
        circulation.approve_loan_request(db, request.id, linda.id, now=NOW)


def test_loan_request_approval_applies_loan_rules(db, make_user, make_book):
    alice, linda = make_user(), make_user("staff")
    book = make_book(tag="red")
    request = circulation.submit_loan_request(
        db, schemas.LoanRequestCreate(user_id=alice.id, book_id=book.id), now=NOW
    )

    with pytest.raises(RuleViolationError) as exc:
        circulation.approve_loan_request(db, request.id, linda.id, now=NOW)
    assert exc.value.code == "library_use_only"
    db.refresh(request)
    assert request.status == "pending"


def test_students_cannot_review_requests(db, make_user, make_book):
    alice, bob = make_user(), make_user()
    book = make_book()
    request = circulation.submit_loan_request(
        db, schemas.LoanRequestCreate(user_id=alice.id, book_id=book.id), now=NOW
    )
    with pytest.raises(RuleViolationError) as exc:
        circulation.reject_loan_request(db, request.id, bob.id, now=NOW)
    assert exc.value.code == "reviewer_not_allowed"


def test_reject_loan_request(db, make_user, make_book):
    alice, admin = make_user(), make_user("admin")
    book = make_book()
    request = circulation.submit_loan_request(
        db, schemas.LoanRequestCreate(user_id=alice.id, book_id=book.id), now=NOW
    )
    request = circulation.reject_loan_request(db, request.id, admin.id, notes="not today", now=NOW)
    assert request.status == "rejected"
    assert request.loan_id is None
    assert db.query(models.Loan).count() == 0


def test_renewal_request_workflow(db, make_user, make_book):
    alice, linda = make_user(), make_user("staff")
    book = make_book()
    loan = circulation.create_loan(db, alice.id, book.id, now=NOW)
    request = circulation.submit_renewal_request(
        db, schemas.RenewalRequestCreate(loan_id=loan.id, notes="exam week"), now=NOW
    )
    assert request.user_id == alice.id

    approved_at = NOW + timedelta(days=4)
    circulation.approve_renewal_request(db, request.id, linda.id, now=approved_at)
    db.refresh(loan)
    assert loan.renewal_count == 1
    assert loan.due_date == approved_at + timedelta(days=5)
