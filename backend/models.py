from sqlalchemy import Column, Integer, String, Boolean, ForeignKey, Float, DateTime, Text, CheckConstraint
from sqlalchemy.orm import relationship
from database import Base
from rules import utcnow

# --- Users ---

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    hashed_password = Column(String, nullable=False)

    # Role: 'student', 'teacher', 'staff', 'admin'
    role = Column(String, default="student", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    loans = relationship("Loan", back_populates="user")
    reservations = relationship("Reservation", back_populates="user")
    fines = relationship("Fine", back_populates="user")


# --- Catalog ---

class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, index=True, nullable=False)
    description = Column(Text, nullable=True)

    books = relationship("Book", back_populates="category")


class Book(Base):
    """A catalog title together with its copy counters"""
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_books_available_le_total"),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, index=True, nullable=False)
    author = Column(String, index=True, nullable=False)
    isbn = Column(String, unique=True, index=True, nullable=True)
    publisher = Column(String, nullable=True)
    year_published = Column(Integer, nullable=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)

    # Department: 'engenharia', 'ciencias-sociais', 'outros'
    department = Column(String, default="outros", nullable=False)
    # Tag: 'red' (library only), 'yellow' (1 day), 'white' (role dependent)
    tag = Column(String, default="white", nullable=False)

    total_copies = Column(Integer, default=1, nullable=False)
    available_copies = Column(Integer, default=1, nullable=False)
    description = Column(Text, nullable=True)
    cover_image = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    category = relationship("Category", back_populates="books")
    loans = relationship("Loan", back_populates="book")
    reservations = relationship("Reservation", back_populates="book")


# --- Circulation (Transactions) ---

class Loan(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)

    loan_date = Column(DateTime, default=utcnow, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)

    # Status: 'active', 'returned'. Overdue is derived, never stored.
    status = Column(String, default="active", nullable=False, index=True)
    renewal_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    user = relationship("User", back_populates="loans")
    book = relationship("Book", back_populates="loans")
    fine = relationship("Fine", back_populates="loan", uselist=False)

    @property
    def is_overdue(self) -> bool:
        return self.status == "active" and self.due_date is not None and self.due_date < utcnow()


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)

    # Status: 'pending', 'notified', 'completed', 'cancelled'
    status = Column(String, default="pending", nullable=False, index=True)
    reservation_date = Column(DateTime, default=utcnow, nullable=False)
    notification_date = Column(DateTime, nullable=True)
    expiration_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    user = relationship("User", back_populates="reservations")
    book = relationship("Book", back_populates="reservations")


class Fine(Base):
    __tablename__ = "fines"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    days_overdue = Column(Integer, nullable=False)

    # Status: 'pending', 'paid'
    status = Column(String, default="pending", nullable=False, index=True)
    payment_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    loan = relationship("Loan", back_populates="fine")
    user = relationship("User", back_populates="fines")


# --- Staff-mediated approval workflow ---

class LoanRequest(Base):
    __tablename__ = "loan_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)

    # Status: 'pending', 'approved', 'rejected'
    status = Column(String, default="pending", nullable=False, index=True)
    request_date = Column(DateTime, default=utcnow, nullable=False)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    review_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=True)

    user = relationship("User", foreign_keys=[user_id])
    book = relationship("Book")


class RenewalRequest(Base):
    __tablename__ = "renewal_requests"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    status = Column(String, default="pending", nullable=False, index=True)
    request_date = Column(DateTime, default=utcnow, nullable=False)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    review_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    loan = relationship("Loan")
    user = relationship("User", foreign_keys=[user_id])
