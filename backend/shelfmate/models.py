from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
import sqlalchemy as sa
from shelfmate.database import Base


# Shelf names as stored in shelves.name
TO_READ_SHELF = "To Read"
FINISHED_SHELF = "Finished"
FAVORITES_SHELF = "Favorites"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, index=True, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    genres = relationship("UserGenre", back_populates="user")
    shelves = relationship("Shelf", back_populates="user")
    seen_books = relationship("UserBook", back_populates="user")


class Genre(Base):
    __tablename__ = "genres"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, unique=True, nullable=False)


class UserGenre(Base):
    """A genre the user picked as a reading preference."""
    __tablename__ = "user_genres"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    genre_id = Column(Integer, ForeignKey("genres.id", ondelete="CASCADE"), nullable=False)

    user = relationship("User", back_populates="genres")
    genre = relationship("Genre")

    __table_args__ = (
        UniqueConstraint("user_id", "genre_id", name="uq_user_genres_user_genre"),
    )


class Book(Base):
    """
    Canonical book record. Only the external (Google Books volume) id is stored;
    descriptive metadata always comes from the upstream source.
    """
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String, unique=True, index=True, nullable=False)

    genres = relationship("BookGenre", back_populates="book")


class BookGenre(Base):
    __tablename__ = "book_genres"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True)
    genre_id = Column(Integer, ForeignKey("genres.id", ondelete="CASCADE"), nullable=False, index=True)

    book = relationship("Book", back_populates="genres")
    genre = relationship("Genre")

    __table_args__ = (
        UniqueConstraint("book_id", "genre_id", name="uq_book_genres_book_genre"),
    )


class UserBook(Base):
    """A book the user has explicitly marked as seen."""
    __tablename__ = "user_books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)

    user = relationship("User", back_populates="seen_books")
    book = relationship("Book")

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_user_books_user_book"),
    )


class Shelf(Base):
    __tablename__ = "shelves"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="shelves")
    books = relationship("ShelfBook", back_populates="shelf")


class ShelfBook(Base):
    __tablename__ = "shelf_books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shelf_id = Column(Integer, ForeignKey("shelves.id", ondelete="CASCADE"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, nullable=True)  # to-read | finished | favorites
    added_at = Column(DateTime, server_default=sa.func.now(), default=datetime.utcnow, nullable=False)
    title = Column(String, nullable=False)
    cover_url = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    shelf = relationship("Shelf", back_populates="books")
    book = relationship("Book")

    __table_args__ = (
        UniqueConstraint("shelf_id", "book_id", name="uq_shelf_books_shelf_book"),
    )
