"""
Canonical book identity.

Books arrive from two external catalogs, camera scans and manual entry, so the
same work can carry an ISBN-13, an ISBN-10, an Open Library work key, a Google
volume id, or nothing but a title. ``canonical_key`` collapses all of those to
one stable string used for social counters; ``candidate_keys`` lists every
historical spelling so lookups find rows written before normalization.

Nothing in this module raises: malformed identifiers are skipped.
"""

import re
from typing import Any, Mapping, Optional, Set, Union

from pydantic import ValidationError as PydanticValidationError

from common.structured_logging import get_logger

from .models import BookRecord

logger = get_logger(__name__)

UNKNOWN_KEY = "unknown"
ISBN_PREFIX = "isbn:"
GOOGLE_PREFIX = "google:"
OPENLIBRARY_PREFIX = "ol:"
TITLE_PREFIX = "title:"

BOOKLAND_PREFIXES = ("978", "979")

_ISBN10_RE = re.compile(r"^\d{9}[\dX]$")
_ISBN13_RE = re.compile(r"^\d{13}$")

RecordLike = Union[BookRecord, Mapping[str, Any], str, None]


# ---------------------------------------------------------------------------
# ISBN helpers
# ---------------------------------------------------------------------------

def strip_isbn(value: Optional[str]) -> str:
    """Remove hyphens and whitespace; uppercase a trailing x."""
    if not value:
        return ""
    return re.sub(r"[\s-]", "", str(value)).upper()


def clean_isbn(value: Optional[str]) -> Optional[str]:
    """Return a well-formed ISBN-10 or ISBN-13, or None."""
    stripped = strip_isbn(value)
    if _ISBN13_RE.match(stripped) or _ISBN10_RE.match(stripped):
        return stripped
    return None


def convert_isbn13_to_isbn10(isbn13: Optional[str]) -> Optional[str]:
    """Derive the ISBN-10 for a 978/979 ISBN-13.

    The nine digits after the prefix are weighted 10 down to 2; the check
    value is ``(11 - sum % 11) % 11`` with 10 written as ``X``.
    """
    cleaned = strip_isbn(isbn13)
    if not _ISBN13_RE.match(cleaned) or not cleaned.startswith(BOOKLAND_PREFIXES):
        return None
    base = cleaned[3:12]
    total = sum(int(digit) * (10 - i) for i, digit in enumerate(base))
    check = (11 - total % 11) % 11
    return base + ("X" if check == 10 else str(check))


def convert_isbn10_to_isbn13(isbn10: Optional[str]) -> Optional[str]:
    cleaned = strip_isbn(isbn10)
    if not _ISBN10_RE.match(cleaned):
        return None
    base = "978" + cleaned[:9]
    total = sum(int(digit) * (1 if i % 2 == 0 else 3) for i, digit in enumerate(base))
    check = (10 - total % 10) % 10
    return base + str(check)


def split_isbns(record: BookRecord) -> tuple[Optional[str], Optional[str]]:
    """Return ``(isbn13, isbn10)`` drawing on the typed and raw columns."""
    isbn13 = None
    isbn10 = None
    for value in (record.isbn13, record.isbn10, record.isbn):
        cleaned = clean_isbn(value)
        if cleaned is None:
            continue
        if len(cleaned) == 13 and isbn13 is None:
            isbn13 = cleaned
        elif len(cleaned) == 10 and isbn10 is None:
            isbn10 = cleaned
    return isbn13, isbn10


# ---------------------------------------------------------------------------
# Open Library keys
# ---------------------------------------------------------------------------

def openlibrary_path(key: Optional[str], kind: str = "works") -> Optional[str]:
    """Turn any stored spelling of an Open Library key into ``/works/OL1W``."""
    if not key:
        return None
    raw = str(key).strip()
    if raw.lower().startswith(OPENLIBRARY_PREFIX):
        raw = raw[len(OPENLIBRARY_PREFIX):]
    raw = raw.strip("/")
    if not raw:
        return None
    if "/" not in raw:
        if raw.upper().endswith("M"):
            kind = "books"
        elif raw.upper().endswith("W"):
            kind = "works"
        raw = f"{kind}/{raw}"
    return "/" + raw


def normalize_openlibrary_key(key: Optional[str]) -> Optional[str]:
    """Lowercased, slash-trimmed key without the ``ol:`` namespace."""
    path = openlibrary_path(key)
    if path is None:
        return None
    return path.strip("/").lower()


def normalize_title(title: Optional[str]) -> str:
    if not title:
        return ""
    return " ".join(str(title).lower().split())


# ---------------------------------------------------------------------------
# Canonical and candidate keys
# ---------------------------------------------------------------------------

def _coerce(record: RecordLike) -> Optional[BookRecord]:
    if record is None:
        return None
    if isinstance(record, BookRecord):
        return record
    if isinstance(record, str):
        return record_from_key(record)
    try:
        return BookRecord.model_validate(dict(record))
    except (PydanticValidationError, TypeError, ValueError):
        logger.debug("Unparseable record passed to identity resolver", exc_info=True)
        return None


def canonical_key(record: RecordLike) -> str:
    """Single stable key for *record*; ``"unknown"`` if nothing identifies it."""
    book = _coerce(record)
    if book is None:
        return UNKNOWN_KEY

    isbn13, isbn10 = split_isbns(book)
    if isbn13:
        return ISBN_PREFIX + isbn13
    if isbn10:
        return ISBN_PREFIX + isbn10

    work_key = normalize_openlibrary_key(book.openlibrary_work_key)
    if work_key:
        return OPENLIBRARY_PREFIX + work_key

    if book.google_books_id:
        return GOOGLE_PREFIX + book.google_books_id

    title = normalize_title(book.title)
    if title:
        return TITLE_PREFIX + title

    return UNKNOWN_KEY


def record_from_key(key: Optional[str]) -> Optional[BookRecord]:
    """Rebuild the partial record a canonical key was derived from."""
    if not key:
        return None
    raw = key.strip()
    if not raw or raw == UNKNOWN_KEY:
        return None
    lowered = raw.lower()
    if lowered.startswith(ISBN_PREFIX):
        return BookRecord(isbn=raw[len(ISBN_PREFIX):])
    if lowered.startswith(GOOGLE_PREFIX):
        return BookRecord(google_books_id=raw[len(GOOGLE_PREFIX):])
    if lowered.startswith(OPENLIBRARY_PREFIX):
        path = openlibrary_path(raw)
        if path and path.startswith("/books/"):
            return BookRecord(openlibrary_edition_key=path)
        return BookRecord(openlibrary_work_key=path)
    if lowered.startswith(TITLE_PREFIX):
        return BookRecord(title=raw[len(TITLE_PREFIX):])
    cleaned = clean_isbn(raw)
    if cleaned:
        return BookRecord(isbn=cleaned)
    # anything else, catalog uuids included, is not an identity
    return None


def _openlibrary_variants(key: Optional[str]) -> Set[str]:
    variants: Set[str] = set()
    if not key:
        return variants
    raw = str(key).strip()
    path = openlibrary_path(raw)
    variants.add(raw)
    if path:
        variants.update({path, path.strip("/"), OPENLIBRARY_PREFIX + path})
        normalized = path.strip("/").lower()
        variants.update({normalized, OPENLIBRARY_PREFIX + normalized})
    return variants


def candidate_keys(record: RecordLike) -> Set[str]:
    """Every spelling under which social rows for *record* may be stored.

    Used only to look rows up; writes always use ``canonical_key``.
    """
    book = _coerce(record)
    if book is None:
        return set()

    keys: Set[str] = set()
    canonical = canonical_key(book)
    keys.add(canonical)

    isbn13, isbn10 = split_isbns(book)
    if isbn13 and not isbn10:
        isbn10 = convert_isbn13_to_isbn10(isbn13)
    if isbn10 and not isbn13:
        isbn13 = convert_isbn10_to_isbn13(isbn10)
    for raw in (book.isbn, book.isbn13, book.isbn10):
        if raw:
            keys.update({raw.strip(), ISBN_PREFIX + raw.strip()})
    for cleaned in (isbn13, isbn10):
        if cleaned:
            keys.update({cleaned, ISBN_PREFIX + cleaned})

    if book.google_books_id:
        keys.update({book.google_books_id, GOOGLE_PREFIX + book.google_books_id})

    keys |= _openlibrary_variants(book.openlibrary_work_key)
    keys |= _openlibrary_variants(book.openlibrary_edition_key)

    title = normalize_title(book.title)
    if title:
        keys.add(TITLE_PREFIX + title)

    keys.discard(UNKNOWN_KEY)
    keys.discard("")
    return keys
