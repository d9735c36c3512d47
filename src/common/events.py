"""
Shared event schemas for Kafka messaging between services.
"""

from datetime import datetime, UTC
from typing import List, Optional, Literal
from pydantic import BaseModel, Field


# Base model with ISO datetime serialization
class _BaseEvent(BaseModel):
    model_config = {
        "ser_json_timedelta": "iso8601",
        "ser_json_bytes": "utf8",
    }
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class BookHydratedEvent(_BaseEvent):
    """Event published when hydration persisted new metadata for a book."""

    event_type: Literal["book_hydrated"] = "book_hydrated"
    book_id: str
    updated_fields: List[str] = Field(..., description="Columns written by this run")
    sources: List[str] = Field(default_factory=list, description="Sources that supplied values")
    source: str = Field("hydration_pipeline")


class BookSocialChangedEvent(_BaseEvent):
    """Event published when the like count for a canonical book key changes."""

    event_type: Literal["book_social_changed"] = "book_social_changed"
    book_key: str
    likes: int = Field(..., ge=0)
    liked: bool
    user_id: Optional[str] = None
    source: str = Field("catalog_api")


class BookEnrichmentTaskEvent(_BaseEvent):
    """Dispatched when a book is missing cover, page count or description."""

    event_type: Literal["book_enrichment_task"] = "book_enrichment_task"
    book_id: str
    isbn: str | None = None
    google_books_id: str | None = None
    openlibrary_work_key: str | None = None
    openlibrary_edition_key: str | None = None
    force: bool = False
    source: str = Field("enrichment_scheduler")


# Topic names
BOOK_EVENTS_TOPIC = "book_events"
SOCIAL_EVENTS_TOPIC = "social_events"
BOOK_ENRICHMENT_TASKS_TOPIC = "book_enrichment_tasks"
