"""Pydantic models shared across the reconciliation subsystems."""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class BookRecord(BaseModel):
    """A catalog entry as seen by the reconciliation layer.

    Every identifier is optional; ``title`` is the only field a usable record
    must carry.
    """

    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True)

    id: Optional[str] = None
    title: str = ""
    authors: List[str] = Field(default_factory=list)
    isbn: Optional[str] = None
    isbn13: Optional[str] = None
    isbn10: Optional[str] = None
    google_books_id: Optional[str] = None
    openlibrary_work_key: Optional[str] = None
    openlibrary_edition_key: Optional[str] = None
    openlibrary_cover_id: Optional[int] = None
    cover_url: Optional[str] = None
    total_pages: Optional[int] = None
    description: Optional[str] = None

    @field_validator("authors", mode="before")
    @classmethod
    def _split_authors(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [a.strip() for a in v.split(",") if a.strip()]
        return [a for a in v if a]

    @field_validator("title", mode="before")
    @classmethod
    def _title_none(cls, v):
        return v or ""

    @field_validator(
        "id",
        "isbn",
        "isbn13",
        "isbn10",
        "google_books_id",
        "openlibrary_work_key",
        "openlibrary_edition_key",
        "cover_url",
        "description",
        mode="before",
    )
    @classmethod
    def _blank_optional(cls, v):
        return _blank_to_none(v)

    @field_validator("total_pages", "openlibrary_cover_id", mode="before")
    @classmethod
    def _positive_or_none(cls, v):
        if v in (None, ""):
            return None
        try:
            number = int(v)
        except (TypeError, ValueError):
            return None
        return number if number > 0 else None

    @property
    def author(self) -> str:
        return ", ".join(self.authors)

    @property
    def is_usable(self) -> bool:
        return bool(self.title.strip())


class HydratedFields(BaseModel):
    """Values a hydration run produced for one record."""

    cover_url: Optional[str] = None
    total_pages: Optional[int] = None
    description: Optional[str] = None
    openlibrary_cover_id: Optional[int] = None
    openlibrary_work_key: Optional[str] = None
    openlibrary_edition_key: Optional[str] = None
    google_books_id: Optional[str] = None
    sources: List[str] = Field(default_factory=list)

    def field_values(self) -> Dict[str, object]:
        return self.model_dump(exclude={"sources"})


class EditionInfo(BaseModel):
    pages: Optional[int] = None
    cover_id: Optional[int] = None
    work_key: Optional[str] = None
    edition_key: Optional[str] = None


class CoverResult(BaseModel):
    url: Optional[str] = None
    source: str = "none"


class EnrichmentJob(BaseModel):
    """Payload of one self-healing enrichment call."""

    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(..., alias="bookId")
    isbn: Optional[str] = None
    google_books_id: Optional[str] = Field(None, alias="googleBooksId")
    openlibrary_work_key: Optional[str] = Field(None, alias="openlibraryWorkKey")
    openlibrary_edition_key: Optional[str] = Field(None, alias="openlibraryEditionKey")

    @classmethod
    def from_record(cls, record: BookRecord) -> "EnrichmentJob":
        return cls(
            book_id=record.id,
            isbn=record.isbn13 or record.isbn10 or record.isbn,
            google_books_id=record.google_books_id,
            openlibrary_work_key=record.openlibrary_work_key,
            openlibrary_edition_key=record.openlibrary_edition_key,
        )


class EnrichmentResponse(BaseModel):
    ok: bool
    metadata: Optional[HydratedFields] = None
    error: Optional[str] = None


class EnrichmentReport(BaseModel):
    """Outcome of one scheduler pass."""

    queued: int = 0
    enriched: int = 0
    failed: int = 0
    skipped_cooldown: int = 0
    skipped_in_flight: int = 0
    skipped_breaker: int = 0
    disabled: bool = False
    updated: Dict[str, BookRecord] = Field(default_factory=dict)


class SocialCounterState(BaseModel):
    likes: int = Field(0, ge=0)
    comments: int = Field(0, ge=0)
    is_liked: bool = False


class ToggleResult(BaseModel):
    """Server answer to a like toggle; ``likes`` may be missing."""

    liked: bool
    likes: Optional[int] = None


class SocialUpdate(BaseModel):
    """Broadcast to every subscriber of a canonical key."""

    key: str
    likes: int = Field(0, ge=0)
    comments: int = Field(0, ge=0)
    is_liked: bool = False
    confirmed: bool = True


class ToggleOutcome(BaseModel):
    key: str
    state: SocialCounterState
    ok: bool = True
    error: Optional[str] = None
