import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models
from auth import hash_password
from database import Base, get_db
from main import app


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def password_hash():
    return hash_password("secret")


@pytest.fixture
def make_user(db, password_hash):
    counter = {"n": 0}

    def _make(role="student", is_active=True, name=None):
        counter["n"] += 1
        n = counter["n"]
        user = models.User(
            username=f"{role}{n}",
            email=f"{role}{n}@uni.ao",
            name=name or f"{role.title()} {n}",
            role=role,
            is_active=is_active,
            hashed_password=password_hash,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_book(db):
    def _make(title="Clean Code", tag="white", copies=1, available=None, **extra):
        book = models.Book(
            title=title,
            author=extra.pop("author", "Robert C. Martin"),
            tag=tag,
            total_copies=copies,
            available_copies=copies if available is None else available,
            **extra,
        )
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return _make
