"""Canonical store reads and writes used by the recommendation and search pipelines."""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Set

from sqlalchemy.orm import Session

from shelfmate.models import (
    Book,
    BookGenre,
    Genre,
    Shelf,
    ShelfBook,
    UserBook,
    UserGenre,
)
from shelfmate.services.genre_matcher import GenreLite
from shelfmate.services.shelf_similarity import ShelfBookRecord

logger = logging.getLogger(__name__)


def list_genres(db: Session) -> List[GenreLite]:
    """The full taxonomy, ordered by id."""
    rows = db.query(Genre.id, Genre.name).order_by(Genre.id.asc()).all()
    return [GenreLite(id=row.id, name=row.name) for row in rows]


def get_preferred_genres(db: Session, user_id: int) -> List[GenreLite]:
    rows = (
        db.query(Genre.id, Genre.name)
        .join(UserGenre, UserGenre.genre_id == Genre.id)
        .filter(UserGenre.user_id == user_id)
        .order_by(UserGenre.id.asc())
        .all()
    )
    return [GenreLite(id=row.id, name=row.name) for row in rows]


def get_shelf_books(db: Session, user_id: int, shelf_name: str) -> List[ShelfBookRecord]:
    """Books on the user's named shelf, most recently added first."""
    rows = (
        db.query(ShelfBook, Book.external_id)
        .join(Shelf, Shelf.id == ShelfBook.shelf_id)
        .join(Book, Book.id == ShelfBook.book_id)
        .filter(Shelf.user_id == user_id, Shelf.name == shelf_name)
        .order_by(ShelfBook.added_at.desc(), ShelfBook.id.desc())
        .all()
    )
    return [
        ShelfBookRecord(
            external_id=external_id,
            title=shelf_book.title or "",
            description=shelf_book.description or "",
            status=shelf_book.status,
            added_at=shelf_book.added_at,
        )
        for shelf_book, external_id in rows
        if external_id
    ]


def get_seen_external_ids(db: Session, user_id: int) -> Set[str]:
    """External ids of books the user explicitly marked as seen."""
    rows = (
        db.query(Book.external_id)
        .join(UserBook, UserBook.book_id == Book.id)
        .filter(UserBook.user_id == user_id)
        .all()
    )
    return {row.external_id for row in rows if row.external_id}


def get_book_genres_by_external_id(
    db: Session, external_ids: Iterable[str]
) -> Dict[str, List[GenreLite]]:
    """Authoritative genre associations keyed by external id. Books without genres are absent."""
    external_ids = list({e for e in external_ids if e})
    if not external_ids:
        return {}

    rows = (
        db.query(Book.external_id, Genre.id, Genre.name)
        .join(BookGenre, BookGenre.book_id == Book.id)
        .join(Genre, Genre.id == BookGenre.genre_id)
        .filter(Book.external_id.in_(external_ids))
        .order_by(BookGenre.id.asc())
        .all()
    )
    genres_by_external_id: Dict[str, List[GenreLite]] = defaultdict(list)
    for external_id, genre_id, genre_name in rows:
        genres_by_external_id[external_id].append(GenreLite(id=genre_id, name=genre_name))
    return dict(genres_by_external_id)


def get_book_ids_by_external_id(db: Session, external_ids: Iterable[str]) -> Dict[str, int]:
    external_ids = list({e for e in external_ids if e})
    if not external_ids:
        return {}
    rows = db.query(Book.id, Book.external_id).filter(Book.external_id.in_(external_ids)).all()
    return {row.external_id: row.id for row in rows}


def get_or_create_book(db: Session, external_id: str) -> Book:
    """Canonical book row for external_id, created (flushed, not committed) when absent."""
    book = db.query(Book).filter(Book.external_id == external_id).first()
    if book is None:
        book = Book(external_id=external_id)
        db.add(book)
        db.flush()
    return book


def add_book_genres(db: Session, book: Book, genre_ids: Iterable[int]) -> List[int]:
    """
    Insert genre associations the book does not have yet.

    Returns the ids actually inserted. Does not commit.
    """
    existing = {
        row.genre_id
        for row in db.query(BookGenre.genre_id).filter(BookGenre.book_id == book.id).all()
    }
    to_insert = [gid for gid in dict.fromkeys(genre_ids) if gid not in existing]
    for genre_id in to_insert:
        db.add(BookGenre(book_id=book.id, genre_id=genre_id))
    if to_insert:
        db.flush()
    return to_insert
