"""
Catalog store contract and its SQLAlchemy implementation.

The hydration pipeline only needs ``get`` and ``upsert``; library views also
ask whether a user already shelves a book under any of its identifiers.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from common.models import Book, UserBook
from common.structured_logging import get_logger

from .errors import NotFound, ValidationError
from .identity import clean_isbn, convert_isbn10_to_isbn13, convert_isbn13_to_isbn10, openlibrary_path
from .models import BookRecord

logger = get_logger(__name__)

UPDATABLE_COLUMNS = {
    "title",
    "author",
    "isbn",
    "isbn13",
    "isbn10",
    "google_books_id",
    "openlibrary_work_key",
    "openlibrary_edition_key",
    "openlibrary_cover_id",
    "cover_url",
    "total_pages",
    "description",
}


class CatalogStore(Protocol):
    async def get(self, book_id: str) -> BookRecord: ...

    async def upsert(self, fields: Mapping[str, Any], book_id: str) -> None: ...

    async def find_by_user_and_identifiers(
        self, user_id: str, identifiers: Mapping[str, Optional[str]]
    ) -> Optional[BookRecord]: ...


def book_to_record(book: Book) -> BookRecord:
    return BookRecord(
        id=book.id,
        title=book.title,
        authors=book.author,
        isbn=book.isbn,
        isbn13=book.isbn13,
        isbn10=book.isbn10,
        google_books_id=book.google_books_id,
        openlibrary_work_key=book.openlibrary_work_key,
        openlibrary_edition_key=book.openlibrary_edition_key,
        openlibrary_cover_id=book.openlibrary_cover_id,
        cover_url=book.cover_url,
        total_pages=book.total_pages,
        description=book.description,
    )


def _isbn_variants(value: Optional[str]) -> List[str]:
    cleaned = clean_isbn(value)
    if not cleaned:
        return []
    variants = {cleaned}
    other = convert_isbn13_to_isbn10(cleaned) if len(cleaned) == 13 else convert_isbn10_to_isbn13(cleaned)
    if other:
        variants.add(other)
    return sorted(variants)


class SqlCatalogStore:
    """CatalogStore backed by the ``books`` and ``user_books`` tables."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def get(self, book_id: str) -> BookRecord:
        with self.session_factory() as db:
            book = db.get(Book, book_id)
            if book is None:
                raise NotFound(book_id)
            return book_to_record(book)

    async def upsert(self, fields: Mapping[str, Any], book_id: str) -> None:
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValidationError(f"Unknown book columns: {sorted(unknown)}", field=sorted(unknown)[0])
        with self.session_factory() as db:
            book = db.get(Book, book_id)
            if book is None:
                raise NotFound(book_id)
            for column, value in fields.items():
                setattr(book, column, value)
            db.commit()
        logger.debug("Book updated", extra={"book_id": book_id, "columns": sorted(fields)})

    def _identifier_clauses(self, identifiers: Mapping[str, Optional[str]]):
        clauses = []
        book_id = identifiers.get("book_id")
        if book_id:
            clauses.append(Book.id == book_id)
        isbns = _isbn_variants(identifiers.get("isbn"))
        if isbns:
            clauses.extend([Book.isbn.in_(isbns), Book.isbn13.in_(isbns), Book.isbn10.in_(isbns)])
        google_id = identifiers.get("google_books_id")
        if google_id:
            clauses.append(Book.google_books_id == google_id)
        work_key = identifiers.get("openlibrary_work_key")
        if work_key:
            path = openlibrary_path(work_key)
            clauses.append(Book.openlibrary_work_key.in_([work_key, path, path.strip("/")]))
        return clauses

    async def find_by_user_and_identifiers(
        self, user_id: str, identifiers: Mapping[str, Optional[str]]
    ) -> Optional[BookRecord]:
        clauses = self._identifier_clauses(identifiers)
        if not user_id or not clauses:
            return None
        with self.session_factory() as db:
            stmt = (
                select(Book)
                .join(UserBook, UserBook.book_id == Book.id)
                .where(UserBook.user_id == user_id)
                .where(or_(*clauses))
                .limit(1)
            )
            book = db.execute(stmt).scalars().first()
            return book_to_record(book) if book else None

    async def list_user_books(self, user_id: str) -> List[BookRecord]:
        with self.session_factory() as db:
            stmt = (
                select(Book)
                .join(UserBook, UserBook.book_id == Book.id)
                .where(UserBook.user_id == user_id)
                .order_by(UserBook.created_at)
            )
            return [book_to_record(b) for b in db.execute(stmt).scalars().all()]

    async def list_incomplete(self, limit: int = 20, exclude_ids: Iterable[str] = ()) -> List[BookRecord]:
        """Books with no cover, page count or description, oldest first."""
        exclude_ids = list(exclude_ids)
        with self.session_factory() as db:
            stmt = (
                select(Book)
                .where(or_(Book.cover_url.is_(None), Book.total_pages.is_(None), Book.description.is_(None)))
                .where(Book.id.not_in(exclude_ids))
                .order_by(Book.created_at)
                .limit(limit)
            )
            return [book_to_record(b) for b in db.execute(stmt).scalars().all()]

    def _find_existing(self, db: Session, record: BookRecord) -> Optional[Book]:
        clauses = self._identifier_clauses(
            {
                "isbn": record.isbn13 or record.isbn10 or record.isbn,
                "google_books_id": record.google_books_id,
                "openlibrary_work_key": record.openlibrary_work_key,
            }
        )
        if not clauses:
            return None
        return db.execute(select(Book).where(or_(*clauses)).limit(1)).scalars().first()

    async def ensure_book(self, record: BookRecord) -> str:
        """Return the id of a book matching any identifier of *record*, inserting it if none does."""
        if not record.is_usable:
            raise ValidationError("A book needs a title", field="title")
        with self.session_factory() as db:
            existing = self._find_existing(db, record)
            if existing is not None:
                return existing.id
            book = Book(
                title=record.title,
                author=record.author or None,
                isbn=record.isbn13 or record.isbn10 or record.isbn,
                isbn13=record.isbn13,
                isbn10=record.isbn10,
                google_books_id=record.google_books_id,
                openlibrary_work_key=openlibrary_path(record.openlibrary_work_key),
                openlibrary_edition_key=openlibrary_path(record.openlibrary_edition_key, "books"),
                openlibrary_cover_id=record.openlibrary_cover_id,
                cover_url=record.cover_url,
                total_pages=record.total_pages,
                description=record.description,
            )
            db.add(book)
            db.commit()
            logger.info("Book added to catalog", extra={"book_id": book.id, "title": record.title})
            return book.id

    async def add_to_shelf(self, user_id: str, book_id: str, status: str = "to_read") -> None:
        with self.session_factory() as db:
            exists = db.execute(
                select(UserBook).where(UserBook.user_id == user_id, UserBook.book_id == book_id)
            ).scalars().first()
            if exists is None:
                db.add(UserBook(user_id=user_id, book_id=book_id, status=status))
                db.commit()
