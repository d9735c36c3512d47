"""
Server-side operations behind the catalog API.

``SocialService`` is the authority for likes: it writes under the canonical
key and reads across every candidate spelling. ``CatalogService`` is the
remote enrichment entry point used by the self-healing scheduler.
"""

from typing import Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from common.events import SOCIAL_EVENTS_TOPIC, BookSocialChangedEvent
from common.kafka_utils import publish_event
from common.models import Base, BookComment, BookLike
from common.redis_utils import ResponseCache
from common.settings import settings
from common.structured_logging import get_logger
from reconciliation.catalog import SqlCatalogStore
from reconciliation.context import ReconciliationContext
from reconciliation.errors import DuplicateConflict, ValidationError
from reconciliation.hydration import HydrationPipeline
from reconciliation.identity import UNKNOWN_KEY, candidate_keys, canonical_key, record_from_key
from reconciliation.models import EnrichmentResponse, SocialCounterState, ToggleResult
from reconciliation.sources import GoogleBooksSource, OpenLibrarySource

logger = get_logger(__name__)


class EnrichRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: str = Field(..., alias="bookId", min_length=1)
    isbn: Optional[str] = None
    google_books_id: Optional[str] = Field(None, alias="googleBooksId")
    openlibrary_work_key: Optional[str] = Field(None, alias="openlibraryWorkKey")
    openlibrary_edition_key: Optional[str] = Field(None, alias="openlibraryEditionKey")
    force: bool = False


class SocialService:
    def __init__(self, session_factory: sessionmaker, publish_events: Optional[bool] = None):
        self.session_factory = session_factory
        self.publish_events = settings.publish_events if publish_events is None else publish_events

    @staticmethod
    def _variants(book_key: str):
        record = record_from_key(book_key)
        if record is None:
            raise ValidationError(f"Unrecognised book key: {book_key!r}", field="book_key")
        return canonical_key(record), candidate_keys(record) | {book_key}

    async def toggle_like(self, user_id: str, book_key: str) -> ToggleResult:
        canonical, variants = self._variants(book_key)
        with self.session_factory() as db:
            existing = db.execute(
                select(BookLike).where(BookLike.user_id == user_id, BookLike.book_key.in_(variants))
            ).scalars().all()
            if existing:
                for like in existing:
                    db.delete(like)
                db.commit()
                liked = False
            else:
                db.add(BookLike(user_id=user_id, book_key=canonical))
                try:
                    db.commit()
                except IntegrityError as e:
                    db.rollback()
                    raise DuplicateConflict(canonical) from e
                liked = True
            likes = db.scalar(
                select(func.count()).select_from(BookLike).where(BookLike.book_key.in_(variants))
            )

        logger.info(
            "Like toggled",
            extra={"book_key": canonical, "liked": liked, "likes": likes},
        )
        if self.publish_events:
            await publish_event(
                SOCIAL_EVENTS_TOPIC,
                BookSocialChangedEvent(book_key=canonical, likes=likes, liked=liked, user_id=user_id),
            )
        return ToggleResult(liked=liked, likes=likes)

    async def counts(self, keys: Iterable[str], user_id: Optional[str] = None) -> Dict[str, SocialCounterState]:
        result: Dict[str, SocialCounterState] = {}
        with self.session_factory() as db:
            for key in keys:
                if not key or key == UNKNOWN_KEY or key in result:
                    continue
                record = record_from_key(key)
                if record is None:
                    continue
                variants = candidate_keys(record) | {key}
                likes = db.scalar(
                    select(func.count()).select_from(BookLike).where(BookLike.book_key.in_(variants))
                )
                comments = db.scalar(
                    select(func.count()).select_from(BookComment).where(BookComment.book_key.in_(variants))
                )
                is_liked = False
                if user_id:
                    is_liked = (
                        db.execute(
                            select(BookLike.id)
                            .where(BookLike.user_id == user_id, BookLike.book_key.in_(variants))
                            .limit(1)
                        ).first()
                        is not None
                    )
                result[key] = SocialCounterState(likes=likes or 0, comments=comments or 0, is_liked=is_liked)
        return result


class CatalogService:
    def __init__(self, store: SqlCatalogStore, pipeline: HydrationPipeline, social: SocialService):
        self.store = store
        self.pipeline = pipeline
        self.social = social

    async def enrich(self, request: EnrichRequest) -> EnrichmentResponse:
        """Hydrate one book, first backfilling identifiers the caller knows."""
        record = await self.store.get(request.book_id)

        backfill = {}
        if request.isbn and not (record.isbn or record.isbn13 or record.isbn10):
            backfill["isbn"] = request.isbn
        if request.google_books_id and not record.google_books_id:
            backfill["google_books_id"] = request.google_books_id
        if request.openlibrary_work_key and not record.openlibrary_work_key:
            backfill["openlibrary_work_key"] = request.openlibrary_work_key
        if request.openlibrary_edition_key and not record.openlibrary_edition_key:
            backfill["openlibrary_edition_key"] = request.openlibrary_edition_key
        if backfill:
            await self.store.upsert(backfill, request.book_id)
            record = record.model_copy(update=backfill)
            logger.info("Backfilled identifiers before enrichment", extra={"book_id": request.book_id, "columns": sorted(backfill)})

        metadata = await self.pipeline.hydrate(record, force=request.force)
        return EnrichmentResponse(ok=True, metadata=metadata)

    async def close(self) -> None:
        for source in (self.pipeline.google, self.pipeline.open_library):
            if source is not None:
                await source.close()


def build_service(db_url: Optional[str] = None) -> CatalogService:
    """Wire the production service from settings. Fails fast on missing configuration."""
    engine = create_engine(db_url or settings.db_url, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    store = SqlCatalogStore(session_factory)
    pipeline = HydrationPipeline(
        store,
        google=GoogleBooksSource(cache=ResponseCache("google_books")),
        open_library=OpenLibrarySource(cache=ResponseCache("open_library")),
        context=ReconciliationContext.from_settings(),
    )
    return CatalogService(store, pipeline, SocialService(session_factory))
