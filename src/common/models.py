import uuid

from sqlalchemy import Column, String, Integer, Text, TIMESTAMP, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


# ====================================================================
# CATALOG
# ====================================================================

class Book(Base):
    """Shared catalog entry; identifiers from every source live side by side"""
    __tablename__ = "books"

    id = Column(String, primary_key=True, default=_new_id)
    title = Column(String, nullable=False)
    author = Column(String)
    isbn = Column(String)  # historical column, may hold either ISBN form
    isbn13 = Column(String)
    isbn10 = Column(String)
    google_books_id = Column(String)
    openlibrary_work_key = Column(String)
    openlibrary_edition_key = Column(String)
    openlibrary_cover_id = Column(Integer)
    cover_url = Column(Text)
    total_pages = Column(Integer)
    description = Column(Text)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_books_isbn", "isbn"),
        Index("idx_books_google_books_id", "google_books_id"),
        Index("idx_books_openlibrary_work_key", "openlibrary_work_key"),
    )


class UserBook(Base):
    """A book on a user's shelf"""
    __tablename__ = "user_books"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False)
    book_id = Column(String, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    status = Column(String, default="to_read")  # to_read | reading | read
    current_page = Column(Integer, default=0)
    created_at = Column(TIMESTAMP, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_user_books_user_book"),
        Index("idx_user_books_user", "user_id"),
    )


# ====================================================================
# SOCIAL (keyed by canonical book key, not by catalog id)
# ====================================================================

class BookLike(Base):
    __tablename__ = "book_likes"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False)
    book_key = Column(String, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "book_key", name="uq_book_likes_user_key"),
        Index("idx_book_likes_key", "book_key"),
    )


class BookComment(Base):
    __tablename__ = "book_comments"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False)
    book_key = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(TIMESTAMP, server_default=func.now())

    __table_args__ = (
        Index("idx_book_comments_key", "book_key"),
    )
