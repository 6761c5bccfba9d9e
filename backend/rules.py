"""Circulation rules: due dates, overdue fines and loan eligibility.

Everything here is a pure function over plain records (ORM rows or anything
with the same attributes). Nothing touches the database; ``circulation`` loads
the records and applies the side effects.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import config

ROLES = ("student", "teacher", "staff", "admin")
TAGS = ("red", "yellow", "white")
LOANABLE_TAGS = ("yellow", "white")
YELLOW_TAG_DAYS = 1


@dataclass(frozen=True)
class RolePolicy:
    max_books: int
    white_tag_days: int
    unique_titles_only: bool = True


# Staff keeps parity with students; admins borrow on the same terms as staff.
ROLE_POLICIES = {
    "teacher": RolePolicy(max_books=4, white_tag_days=15),
    "student": RolePolicy(max_books=2, white_tag_days=5),
    "staff": RolePolicy(max_books=2, white_tag_days=5),
    "admin": RolePolicy(max_books=2, white_tag_days=5),
}

# Unknown roles can't borrow anything
NO_POLICY = RolePolicy(max_books=0, white_tag_days=0)


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None


ALLOWED = Eligibility(allowed=True)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def policy_for(role: str) -> RolePolicy:
    return ROLE_POLICIES.get(role, NO_POLICY)


def loan_days(role: str, tag: str) -> int:
    if tag == "yellow":
        return YELLOW_TAG_DAYS
    if tag == "white":
        return policy_for(role).white_tag_days
    # red and anything unrecognised
    return 0


def calculate_due_date(role: str, tag: str, now: Optional[datetime] = None) -> datetime:
    """Due date for a loan started at ``now``.

    Red-tagged books return ``now`` unchanged; eligibility must have rejected
    them before a loan is ever created.
    """
    now = now or utcnow()
    return now + timedelta(days=loan_days(role, tag))


def calculate_fine(due_date: datetime, return_date: datetime) -> tuple:
    """Return ``(amount, days_overdue)`` for a return at ``return_date``.

    Only whole elapsed days count; an on-time or early return yields ``(0, 0)``.
    """
    days_overdue = (return_date - due_date) // timedelta(days=1)
    if days_overdue <= 0:
        return 0.0, 0
    return days_overdue * config.FINE_PER_DAY, days_overdue


def pending_fines_total(fines: Iterable) -> float:
    return sum(f.amount for f in fines if f.status == "pending")


def is_overdue(loan, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return loan.status == "active" and loan.due_date < now


def deny(code: str, reason: str) -> Eligibility:
    return Eligibility(allowed=False, reason=reason, code=code)


def check_loan_eligibility(user, book, active_loans: list, fines_total: float) -> Eligibility:
    """Decide whether ``user`` may borrow ``book``.

    ``active_loans`` are the user's active loans; each needs ``book_id`` and a
    ``book`` with a ``title``. Checks short-circuit on the first failure.
    """
    # 1. User
    if user is None:
        return deny("user_not_found", "User not found")
    if not user.is_active:
        return deny("user_inactive", "User account is inactive")

    # 2. Book
    if book is None:
        return deny("book_not_found", "Book not found")

    # 3. Availability
    if book.available_copies <= 0:
        return deny("no_copies_available", "No copies of this book are available")

    # 4. Tag
    if book.tag == "red":
        return deny("library_use_only", "This book is for library use only (red tag)")
    if book.tag not in LOANABLE_TAGS:
        return deny("library_use_only", f"Books tagged '{book.tag}' cannot be loaned")

    # 5. Fines
    if fines_total >= config.FINE_BLOCK_THRESHOLD:
        return deny(
            "fines_blocking",
            f"Pending fines of {fines_total:g} Kz block new loans "
            f"(limit {config.FINE_BLOCK_THRESHOLD:g} Kz). Pay them to borrow again.",
        )

    # 6. Loan limit
    policy = policy_for(user.role)
    if len(active_loans) >= policy.max_books:
        return deny("loan_limit", f"Loan limit of {policy.max_books} books reached")

    # 7. Same book
    if any(loan.book_id == book.id for loan in active_loans):
        return deny("already_borrowed", "You already have this book on loan")

    # 8. Same title, different copy
    if policy.unique_titles_only:
        if any(loan.book is not None and loan.book.title == book.title for loan in active_loans):
            return deny("duplicate_title", "You already have a book with this title on loan")

    return ALLOWED


def renewal_block(loan, user_id: int, reservations: Iterable, fines_total: float) -> Optional[Eligibility]:
    """First rule that blocks renewing an active ``loan``, or None."""
    if loan.renewal_count >= config.MAX_RENEWALS:
        return deny("renewal_limit", f"Renewal limit of {config.MAX_RENEWALS} reached")

    if any(r.status in ("pending", "notified") and r.user_id != user_id for r in reservations):
        return deny("reserved_by_other", "Cannot renew: another user has reserved this book")

    if fines_total > 0:
        return deny("fines_pending", "You have pending fines. Pay them to renew loans.")

    return None


def reservation_block(book_id: int, active_reservations: list) -> Optional[Eligibility]:
    """``active_reservations`` are the user's pending/notified reservations."""
    if len(active_reservations) >= config.MAX_RESERVATIONS_PER_USER:
        return deny(
            "reservation_limit",
            f"Limit of {config.MAX_RESERVATIONS_PER_USER} simultaneous reservations reached",
        )
    if any(r.book_id == book_id for r in active_reservations):
        return deny("duplicate_reservation", "You already have an active reservation for this book")
    return None


def pickup_deadline(now: datetime) -> datetime:
    return now + timedelta(hours=config.RESERVATION_PICKUP_HOURS)
