import pandas as pd
from sqlalchemy.orm import Session
from sqlalchemy import func
import models
import rules


def dashboard_stats(db: Session, now=None) -> dict:
    now = now or rules.utcnow()
    pending_fines = db.query(models.Fine).filter(models.Fine.status == "pending")
    return {
        "total_books": db.query(models.Book).count(),
        "available_books": db.query(func.sum(models.Book.available_copies)).scalar() or 0,
        "total_users": db.query(models.User).count(),
        "active_loans": db.query(models.Loan).filter(models.Loan.status == "active").count(),
        "overdue_loans": db.query(models.Loan).filter(
            models.Loan.status == "active",
            models.Loan.due_date < now,
        ).count(),
        "pending_reservations": db.query(models.Reservation).filter(
            models.Reservation.status.in_(["pending", "notified"])
        ).count(),
        "pending_fines": pending_fines.count(),
        "total_fines_amount": float(
            db.query(func.sum(models.Fine.amount)).filter(models.Fine.status == "pending").scalar() or 0.0
        ),
    }


def get_popular_books(db: Session, limit: int = 10):
    """Books with the most loans, as ``(book, loan_count)`` pairs"""
    # SQL: SELECT book_id, COUNT(*) FROM loans GROUP BY book_id ORDER BY COUNT(*) DESC
    results = db.query(models.Loan.book_id, func.count(models.Loan.id).label("count"))\
        .group_by(models.Loan.book_id)\
        .order_by(func.count(models.Loan.id).desc(), models.Loan.book_id.asc())\
        .limit(limit).all()

    books = {b.id: b for b in db.query(models.Book).filter(models.Book.id.in_([r.book_id for r in results]))}
    return [(books[r.book_id], r.count) for r in results if r.book_id in books]


def get_active_users(db: Session, limit: int = 10):
    """Users with the most loans, as ``(user, loan_count)`` pairs"""
    results = db.query(models.Loan.user_id, func.count(models.Loan.id).label("count"))\
        .group_by(models.Loan.user_id)\
        .order_by(func.count(models.Loan.id).desc(), models.Loan.user_id.asc())\
        .limit(limit).all()

    users = {u.id: u for u in db.query(models.User).filter(models.User.id.in_([r.user_id for r in results]))}
    return [(users[r.user_id], r.count) for r in results if r.user_id in users]


def overdue_report(db: Session, now=None) -> list:
    now = now or rules.utcnow()
    overdue_loans = db.query(models.Loan).filter(
        models.Loan.status == "active",
        models.Loan.due_date < now,
    ).order_by(models.Loan.due_date.asc()).all()

    report = []
    for loan in overdue_loans:
        # Not persisted: fines are only assessed when the book comes back
        accrued, days_over = rules.calculate_fine(loan.due_date, now)
        report.append({
            "loan_id": loan.id,
            "book_title": loan.book.title if loan.book else "Unknown",
            "user_name": loan.user.name,
            "user_email": loan.user.email,
            "due_date": loan.due_date,
            "days_overdue": days_over,
            "accrued_fine": accrued,
        })
    return report


def _monthly_counts(frame: pd.DataFrame, column: str, name: str, value: str = None) -> pd.Series:
    frame = frame.dropna(subset=[column])
    if frame.empty:
        return pd.Series(dtype="float64", name=name)
    months = pd.to_datetime(frame[column]).dt.strftime("%Y-%m")
    if value is None:
        return frame.groupby(months).size().rename(name)
    return frame.groupby(months)[value].sum().rename(name)


def monthly_activity(db: Session) -> list:
    """Loans issued, books returned and fines assessed per calendar month."""
    conn = db.connection()
    df_loans = pd.read_sql(db.query(models.Loan.loan_date, models.Loan.return_date).statement, conn)
    df_fines = pd.read_sql(db.query(models.Fine.created_at, models.Fine.amount).statement, conn)

    activity = pd.concat(
        [
            _monthly_counts(df_loans, "loan_date", "loans"),
            _monthly_counts(df_loans, "return_date", "returns"),
            _monthly_counts(df_fines, "created_at", "fines_assessed", value="amount"),
        ],
        axis=1,
    ).fillna(0).sort_index()

    return [
        {
            "month": month,
            "loans": int(row["loans"]),
            "returns": int(row["returns"]),
            "fines_assessed": float(row["fines_assessed"]),
        }
        for month, row in activity.iterrows()
    ]
