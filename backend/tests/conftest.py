"""Pytest configuration for backend tests."""
import sys
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Tests never talk to a real database; settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SELECTION_STRATEGY", "ranked")
os.environ.setdefault("PERSIST_GENRES_IN_BACKGROUND", "false")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from shelfmate.database import Base

# Import the entire models module to ensure all models are registered with Base.metadata
import shelfmate.models  # noqa: F401
from shelfmate.models import (
    Book,
    BookGenre,
    Genre,
    Shelf,
    ShelfBook,
    User,
    UserBook,
    UserGenre,
)
from shelfmate.services.candidates import CandidateBook, make_candidate
from shelfmate.services.genre_matcher import GenreLite


@pytest.fixture(scope="function")
def engine():
    """
    Fresh in-memory SQLite database per test.

    StaticPool keeps a single connection so every session (including the ones
    the app opens) sees the same database.
    """
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    if not Base.metadata.tables:
        raise RuntimeError(
            "No tables registered in Base.metadata. "
            "Did you import shelfmate.models? All model classes must be imported before create_all()."
        )

    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db(session_factory) -> Session:
    """Database session for each test; commits are allowed since the database is thrown away."""
    session = session_factory()
    yield session
    session.close()


# ----------------------------
# Store helpers
# ----------------------------
def create_user(db: Session, email: str = "reader@example.com") -> User:
    user = User(email=email, first_name="Test", last_name="Reader")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_genres(db: Session, names: List[str]) -> List[Genre]:
    genres = [Genre(name=name) for name in names]
    db.add_all(genres)
    db.commit()
    for genre in genres:
        db.refresh(genre)
    return genres


def select_genres(db: Session, user: User, genres: List[Genre]) -> None:
    for genre in genres:
        db.add(UserGenre(user_id=user.id, genre_id=genre.id))
    db.commit()


def get_or_create_book_row(db: Session, external_id: str) -> Book:
    book = db.query(Book).filter(Book.external_id == external_id).first()
    if book is None:
        book = Book(external_id=external_id)
        db.add(book)
        db.commit()
        db.refresh(book)
    return book


def add_to_shelf(
    db: Session,
    user: User,
    shelf_name: str,
    external_id: str,
    title: str,
    description: str = "",
    added_at: Optional[datetime] = None,
) -> ShelfBook:
    shelf = db.query(Shelf).filter(Shelf.user_id == user.id, Shelf.name == shelf_name).first()
    if shelf is None:
        shelf = Shelf(user_id=user.id, name=shelf_name)
        db.add(shelf)
        db.commit()
        db.refresh(shelf)

    book = get_or_create_book_row(db, external_id)
    entry = ShelfBook(
        shelf_id=shelf.id,
        book_id=book.id,
        title=title,
        description=description,
        added_at=added_at or datetime.utcnow(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def mark_seen(db: Session, user: User, external_id: str) -> None:
    book = get_or_create_book_row(db, external_id)
    db.add(UserBook(user_id=user.id, book_id=book.id))
    db.commit()


def tag_book(db: Session, external_id: str, genres: List[Genre]) -> Book:
    book = get_or_create_book_row(db, external_id)
    for genre in genres:
        db.add(BookGenre(book_id=book.id, genre_id=genre.id))
    db.commit()
    return book


# ----------------------------
# Upstream fakes
# ----------------------------
def candidate(
    external_id: str,
    title: str,
    authors=("Some Author",),
    rating: float = 4.0,
    description: str = "A story.",
    categories=(),
    source_genres=(),
) -> CandidateBook:
    return make_candidate(
        title=title,
        authors=list(authors),
        published_year=2001,
        isbn=None,
        cover_url=f"https://covers.example/{external_id}.jpg",
        external_id=external_id,
        description=description,
        rating=rating,
        categories=list(categories),
        source_genres=source_genres,
    )


class FakeMetadataSource:
    """Serves canned candidates per query and records every call."""

    def __init__(self, results: Optional[Dict[str, List[CandidateBook]]] = None, error: Optional[Exception] = None):
        self.results = results or {}
        self.error = error
        self.calls = []

    def fetch(self, query: str, max_results: int = 20, detailed_categories: bool = False) -> List[CandidateBook]:
        self.calls.append((query, max_results, detailed_categories))
        if self.error is not None:
            raise self.error
        return list(self.results.get(query, []))


class FakeResponse:
    def __init__(self, payload=None, status_code: int = 200):
        self.payload = payload if payload is not None else {}
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Stand-in for requests.Session: routes GETs by URL through a handler."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, dict(params or {})))
        return self.handler(url, params or {})

    def close(self):
        self.closed = True


@pytest.fixture
def fake_source():
    return FakeMetadataSource()


@pytest.fixture
def genre_lites():
    return [
        GenreLite(id=1, name="Fiction"),
        GenreLite(id=2, name="Science Fiction"),
        GenreLite(id=3, name="Fantasy"),
        GenreLite(id=4, name="History"),
    ]


def days_ago(days: int) -> datetime:
    return datetime.utcnow() - timedelta(days=days)
