from datetime import timedelta

from database import SessionLocal, engine, Base
import models
from auth import hash_password
from rules import calculate_due_date, utcnow


def reset_db():
    print("Resetting database...")
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    print("Database reset complete.")


def seed_db():
    db = SessionLocal()
    now = utcnow()
    try:
        print("Seeding demo data...")

        # =====================================================
        # 1. USERS
        # =====================================================
        pw = hash_password("123")

        admin = models.User(username="admin", email="admin@library.ao", name="Super Admin", role="admin", hashed_password=pw)
        staff = models.User(username="linda", email="linda@library.ao", name="Linda Staff", role="staff", hashed_password=pw)
        teacher = models.User(username="prof.tavares", email="tavares@uni.ao", name="Prof. Tavares", role="teacher", hashed_password=pw)
        alice = models.User(username="alice", email="alice@uni.ao", name="Alice Active", role="student", hashed_password=pw)
        bob = models.User(username="bob", email="bob@uni.ao", name="Bob The Debtor", role="student", hashed_password=pw)
        charlie = models.User(username="charlie", email="charlie@uni.ao", name="Charlie Queue", role="student", hashed_password=pw)
        david = models.User(username="david", email="david@uni.ao", name="David Late", role="student", hashed_password=pw)

        db.add_all([admin, staff, teacher, alice, bob, charlie, david])
        db.commit()

        # =====================================================
        # 2. CATEGORIES & BOOKS
        # =====================================================
        tech = models.Category(name="Computing", description="Programming and computer science")
        fiction = models.Category(name="Fiction", description="Novels and short stories")
        social = models.Category(name="Social Sciences", description="Sociology, economics and law")
        db.add_all([tech, fiction, social])
        db.commit()

        books_data = [
            {"title": "Clean Code", "author": "Robert C. Martin", "category": tech, "department": "engenharia", "tag": "white", "copies": 2},
            {"title": "Introduction to Algorithms", "author": "Thomas H. Cormen", "category": tech, "department": "engenharia", "tag": "red", "copies": 1},
            {"title": "Python Crash Course", "author": "Eric Matthes", "category": tech, "department": "engenharia", "tag": "yellow", "copies": 3},
            {"title": "1984", "author": "George Orwell", "category": fiction, "department": "outros", "tag": "white", "copies": 1},
            {"title": "The Hobbit", "author": "J.R.R. Tolkien", "category": fiction, "department": "outros", "tag": "white", "copies": 2},
            {"title": "The Wealth of Nations", "author": "Adam Smith", "category": social, "department": "ciencias-sociais", "tag": "white", "copies": 1},
        ]

        books = {}
        for i, b_data in enumerate(books_data):
            book = models.Book(
                title=b_data["title"],
                author=b_data["author"],
                isbn=f"978-000000{i:04d}",
                category_id=b_data["category"].id,
                department=b_data["department"],
                tag=b_data["tag"],
                total_copies=b_data["copies"],
                available_copies=b_data["copies"],
            )
            db.add(book)
            books[book.title] = book
        db.commit()

        def lend(user, book, loan_date):
            book.available_copies -= 1
            loan = models.Loan(
                user_id=user.id,
                book_id=book.id,
                loan_date=loan_date,
                due_date=calculate_due_date(user.role, book.tag, loan_date),
            )
            db.add(loan)
            return loan

        # =====================================================
        # 3. ACTIVE LOANS (one of them overdue)
        # =====================================================
        lend(alice, books["1984"], now - timedelta(days=1))
        lend(david, books["Clean Code"], now - timedelta(days=9))  # due 4 days ago
        lend(teacher, books["The Hobbit"], now - timedelta(days=2))
        db.commit()

        # =====================================================
        # 4. RESERVATION QUEUE for "1984"
        # =====================================================
        db.add_all([
            models.Reservation(user_id=charlie.id, book_id=books["1984"].id, reservation_date=now - timedelta(hours=5)),
            models.Reservation(user_id=david.id, book_id=books["1984"].id, reservation_date=now - timedelta(hours=1)),
        ])

        # =====================================================
        # 5. FINES: Bob returned a book 5 days late and has not paid
        # =====================================================
        past_loan = models.Loan(
            user_id=bob.id,
            book_id=books["The Wealth of Nations"].id,
            loan_date=now - timedelta(days=20),
            due_date=now - timedelta(days=15),
            return_date=now - timedelta(days=10),
            status="returned",
        )
        db.add(past_loan)
        db.commit()
        db.add(models.Fine(loan_id=past_loan.id, user_id=bob.id, amount=2500.0, days_overdue=5, status="pending", created_at=past_loan.return_date))
        db.commit()

        print("Seeding complete!")
        print("------------------------------------------------")
        print("All passwords: 123")
        print("admin / linda          -> admin and staff reviewers")
        print("prof.tavares           -> teacher, borrowing 'The Hobbit'")
        print("alice                  -> borrowing '1984'")
        print("bob                    -> BLOCKED (2500 Kz pending fine)")
        print("charlie / david        -> queue #1 and #2 for '1984'; david has an overdue loan")
        print("------------------------------------------------")

    except Exception as e:
        print(f"Error seeding data: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    reset_db()
    seed_db()
