"""
Metadata hydration.

Fills cover, page count and description for one catalog record from the two
bibliographic sources, in a fixed priority order per field, without ever
erasing what the record already has.

Field priorities:

- pages: Open Library edition by ISBN, Google volume, Open Library Books API
- cover: Open Library cover id, Open Library cover by ISBN, Google thumbnail
- description: Google volume, Open Library work, Open Library edition,
  generated summary

The Open Library edition lookup also discovers the cover id and the work and
edition keys, which later steps use and which are backfilled on the record.

Results are pooled under the hydration cache key (work, edition, canonical).
Inside a pool, each edition keeps its own slot recording which fields were
looked up, and a found description is shared with every edition of the work.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple, Union

from common.events import BOOK_EVENTS_TOPIC, BookHydratedEvent
from common.kafka_utils import publish_event
from common.metrics import HYDRATION_RUNS_TOTAL
from common.settings import settings
from common.structured_logging import get_logger

from .catalog import CatalogStore
from .context import ReconciliationContext
from .covers import is_bad_cover_url
from .descriptions import generate_fallback_summary
from .identity import canonical_key, normalize_openlibrary_key, split_isbns
from .models import BookRecord, EditionInfo, HydratedFields

logger = get_logger(__name__)

CONTENT_FIELDS = ("cover_url", "total_pages", "description")
IDENTIFIER_FIELDS = (
    "openlibrary_cover_id",
    "openlibrary_work_key",
    "openlibrary_edition_key",
    "google_books_id",
)
GENERATED_SOURCE = "generated_summary"
SHARED_SLOT = "shared"


@dataclass
class PooledResult:
    found: HydratedFields
    looked_up: FrozenSet[str]


def _normalized(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.lower().split())
    return value


class HydrationPipeline:
    def __init__(
        self,
        store: CatalogStore,
        google=None,
        open_library=None,
        context: Optional[ReconciliationContext] = None,
        publish_events: Optional[bool] = None,
    ):
        self.store = store
        self.google = google
        self.open_library = open_library
        self.context = context or ReconciliationContext.from_settings()
        self.publish_events = settings.publish_events if publish_events is None else publish_events

    # ------------------------------------------------------------------
    # field state
    # ------------------------------------------------------------------

    def is_missing(self, field: str, value: Any) -> bool:
        if field == "cover_url":
            return is_bad_cover_url(value)
        if field == "description":
            return self.context.poor_description(value)
        if field == "total_pages":
            return not value or value <= 0
        return value is None or (isinstance(value, str) and not value.strip())

    def is_complete(self, record: BookRecord) -> bool:
        return not any(self.is_missing(f, getattr(record, f)) for f in CONTENT_FIELDS)

    def needed_fields(self, record: BookRecord, force: bool = False) -> FrozenSet[str]:
        if force:
            return frozenset(CONTENT_FIELDS)
        return frozenset(f for f in CONTENT_FIELDS if self.is_missing(f, getattr(record, f)))

    @staticmethod
    def _current(record: BookRecord) -> HydratedFields:
        return HydratedFields(**{f: getattr(record, f) for f in CONTENT_FIELDS + IDENTIFIER_FIELDS})

    def _overlay(self, record: BookRecord, found: Optional[HydratedFields]) -> HydratedFields:
        current = self._current(record)
        if found is None:
            return current
        values = current.field_values()
        for field, value in found.field_values().items():
            if value is not None and self.is_missing(field, values[field]):
                values[field] = value
        return HydratedFields(**values, sources=list(found.sources))

    # ------------------------------------------------------------------
    # public entry point
    # ------------------------------------------------------------------

    async def hydrate(
        self,
        book: Union[str, BookRecord],
        *,
        force: bool = False,
        dry_run: bool = False,
    ) -> HydratedFields:
        """Hydrate one record and return its resulting field values.

        Args:
            book: catalog id, or the record itself
            force: bypass the recency/completeness short-circuits and the
                hydration cache, and allow replacing populated fields with
                materially different source values
            dry_run: compute everything but write nothing, neither to the
                store nor to the hydration markers and pool

        Raises:
            NotFound: the id does not exist in the store
        """
        record = await self.store.get(book) if isinstance(book, str) else book
        marker = record.id or canonical_key(record)

        if not force:
            if self.context.was_recently_hydrated(marker):
                HYDRATION_RUNS_TOTAL.labels(outcome="recent").inc()
                return self._overlay(record, self._cached_found(record, self.needed_fields(record)))
            if self.is_complete(record):
                if not dry_run:
                    self.context.mark_hydrated(marker)
                HYDRATION_RUNS_TOTAL.labels(outcome="complete").inc()
                return self._current(record)

        with logger.log_performance("hydrate_book", book_id=record.id, force=force, dry_run=dry_run):
            found = await self._found_values(record, force, dry_run)
            updates = self.plan_updates(record, found, force)

            if updates and not dry_run and record.id:
                await self.store.upsert(updates, record.id)
                await self._announce(record.id, updates, found)

        if not dry_run:
            self.context.mark_hydrated(marker)
        HYDRATION_RUNS_TOTAL.labels(outcome="updated" if updates else "unchanged").inc()
        logger.info(
            "Hydration finished",
            extra={
                "book_id": record.id,
                "updated_fields": sorted(updates),
                "sources": found.sources,
                "dry_run": dry_run,
            },
        )

        values = self._current(record).field_values()
        values.update(updates)
        return HydratedFields(**values, sources=list(found.sources))

    def plan_updates(self, record: BookRecord, found: HydratedFields, force: bool) -> Dict[str, Any]:
        """Columns to write: previously empty fields, plus material changes when forced."""
        generated = GENERATED_SOURCE in found.sources
        updates: Dict[str, Any] = {}
        for field in CONTENT_FIELDS:
            new = getattr(found, field)
            if new is None:
                continue
            old = getattr(record, field)
            if self.is_missing(field, old):
                updates[field] = new
            elif (
                force
                and not (field == "description" and generated)
                and _normalized(old) != _normalized(new)
            ):
                updates[field] = new
        for field in IDENTIFIER_FIELDS:
            new = getattr(found, field)
            if new is not None and self.is_missing(field, getattr(record, field)):
                updates[field] = new
        return updates

    # ------------------------------------------------------------------
    # source fan-out
    # ------------------------------------------------------------------

    def _slot_keys(self, record: BookRecord) -> Optional[Tuple[str, str]]:
        """(this edition's slot, the slot shared by the whole pool)."""
        pool = self.context.hydration_cache_key(record)
        if pool is None:
            return None
        edition = self.context.edition_identity(record) or pool
        return f"{pool}#{edition}", f"{pool}#{SHARED_SLOT}"

    def _cached_found(self, record: BookRecord, needed: FrozenSet[str]) -> Optional[HydratedFields]:
        """Pooled result for *record*, only if it looked up every field in *needed*.

        Another edition's slot never answers for pages or covers; the shared
        slot only answers when a description is all that is needed.
        """
        keys = self._slot_keys(record)
        if keys is None:
            return None
        own, shared = keys
        entry = self.context.hydration_cache.lookup(own)
        if entry is not None and needed <= entry.value.looked_up:
            return entry.value.found
        if needed <= {"description"}:
            entry = self.context.hydration_cache.lookup(shared)
            if entry is not None:
                return entry.value.found
        return None

    def _remember(self, record: BookRecord, found: HydratedFields, needed: FrozenSet[str]) -> None:
        backfilled = {
            f: getattr(found, f)
            for f in IDENTIFIER_FIELDS
            if getattr(found, f) is not None and getattr(record, f) is None
        }
        variants: List[BookRecord] = [record]
        if backfilled:
            variants.append(record.model_copy(update=backfilled))

        shareable = bool("description" in needed and found.description and GENERATED_SOURCE not in found.sources)
        shared_value = PooledResult(
            HydratedFields(
                description=found.description,
                openlibrary_work_key=found.openlibrary_work_key,
                sources=[s for s in found.sources if s.startswith("description:")],
            ),
            frozenset({"description"}),
        )
        for variant in variants:
            keys = self._slot_keys(variant)
            if keys is None:
                continue
            own, shared = keys
            self.context.hydration_cache.set(own, PooledResult(found, needed))
            if shareable:
                self.context.hydration_cache.set(shared, shared_value)

    async def _attempt(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one source lookup; failures are logged and read as "nothing found"."""
        try:
            return await call()
        except Exception as e:
            logger.warning(
                "Source lookup failed during hydration",
                extra={"lookup": label, "error_type": type(e).__name__, "error": str(e)},
            )
            return None

    async def _found_values(self, record: BookRecord, force: bool, dry_run: bool) -> HydratedFields:
        needed = self.needed_fields(record, force)
        if not force:
            cached = self._cached_found(record, needed)
            if cached is not None:
                logger.debug("Hydration cache hit", extra={"book_id": record.id, "fields": sorted(needed)})
                return cached

        found = await self._fetch(record, needed)
        if not dry_run:
            self._remember(record, found, needed)
        return found

    async def _fetch(self, record: BookRecord, needed: FrozenSet[str]) -> HydratedFields:
        found = HydratedFields()
        isbn13, isbn10 = split_isbns(record)
        isbn = isbn13 or isbn10

        need_pages = "total_pages" in needed
        need_cover = "cover_url" in needed
        need_description = "description" in needed

        cover_id = record.openlibrary_cover_id
        work_key = record.openlibrary_work_key
        edition_key = record.openlibrary_edition_key

        edition: Optional[EditionInfo] = None
        wants_edition = need_pages or (need_cover and not cover_id) or (
            need_description and not (work_key or edition_key)
        )
        if isbn and self.open_library is not None and wants_edition:
            edition = await self._attempt(
                "open_library.edition_by_isbn", lambda: self.open_library.get_edition_by_isbn(isbn)
            )
        if edition is not None:
            found.sources.append("open_library_edition")
            found.openlibrary_cover_id = edition.cover_id
            found.openlibrary_work_key = edition.work_key
            found.openlibrary_edition_key = edition.edition_key
            cover_id = cover_id or edition.cover_id
            work_key = work_key or edition.work_key
            edition_key = edition_key or edition.edition_key

        volume_memo: Dict[str, Optional[BookRecord]] = {}

        async def google_volume() -> Optional[BookRecord]:
            if "volume" not in volume_memo:
                volume = None
                if record.google_books_id and self.google is not None:
                    volume = await self._attempt(
                        "google_books.get_by_id", lambda: self.google.get_by_id(record.google_books_id)
                    )
                volume_memo["volume"] = volume
            return volume_memo["volume"]

        # pages
        if need_pages:
            pages = edition.pages if edition else None
            if pages:
                found.sources.append("pages:open_library_edition")
            if not pages:
                volume = await google_volume()
                pages = volume.total_pages if volume else None
                if pages:
                    found.sources.append("pages:google_books")
            if not pages and isbn and self.open_library is not None:
                pages = await self._attempt(
                    "open_library.books_api", lambda: self.open_library.get_pages_from_books_api(isbn)
                )
                if pages:
                    found.sources.append("pages:open_library_books_api")
            found.total_pages = pages or None

        # cover
        if need_cover:
            cover_url = None
            if cover_id and self.open_library is not None:
                result = await self._attempt(
                    "open_library.cover_by_id", lambda: self.open_library.get_cover_url(cover_id=cover_id)
                )
                cover_url = result.url if result else None
            if is_bad_cover_url(cover_url) and isbn and self.open_library is not None:
                result = await self._attempt(
                    "open_library.cover_by_isbn", lambda: self.open_library.get_cover_url(isbn=isbn)
                )
                cover_url = result.url if result else None
            if is_bad_cover_url(cover_url):
                volume = await google_volume()
                cover_url = volume.cover_url if volume else None
            if not is_bad_cover_url(cover_url):
                found.cover_url = cover_url
                found.sources.append("cover")

        # description
        if need_description:
            volume = await google_volume()
            description = volume.description if volume else None
            if description:
                found.sources.append("description:google_books")
            else:
                description = await self._secondary_description(record, work_key, edition_key)
                if description:
                    found.sources.append("description:open_library")
            if not description:
                description = generate_fallback_summary(
                    record.title, record.author, found.total_pages or record.total_pages
                )
                found.sources.append(GENERATED_SOURCE)
            found.description = description

        return found

    async def _secondary_description(
        self, record: BookRecord, work_key: Optional[str], edition_key: Optional[str]
    ) -> Optional[str]:
        """Work description, then edition description, through the description cache.

        Successes are cached for the description TTL, failures for the shorter
        failure TTL.
        """
        if self.open_library is None or not (work_key or edition_key):
            return None
        stable = normalize_openlibrary_key(work_key) or normalize_openlibrary_key(edition_key)
        cache_key = stable or canonical_key(record)

        entry = self.context.description_cache.lookup(cache_key)
        if entry is not None:
            return entry.value

        description = None
        if work_key:
            description = await self._attempt(
                "open_library.work_description", lambda: self.open_library.get_work_description(work_key)
            )
        if not description and edition_key:
            description = await self._attempt(
                "open_library.edition_description",
                lambda: self.open_library.get_edition_description(edition_key),
            )

        ttl = self.context.description_ttl if description else self.context.description_failure_ttl
        self.context.description_cache.set(cache_key, description or None, ttl)
        return description or None

    async def _announce(self, book_id: str, updates: Dict[str, Any], found: HydratedFields) -> None:
        if not self.publish_events:
            return
        event = BookHydratedEvent(book_id=book_id, updated_fields=sorted(updates), sources=found.sources)
        await publish_event(BOOK_EVENTS_TOPIC, event)
