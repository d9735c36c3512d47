"""
Self-healing enrichment.

After a library loads, every book still missing a cover, a page count or a
decent description is sent to the enrichment entry point in the background.
Work is bounded three ways:

- at most ``enrichment_concurrency`` calls run at once
- a book is not re-enriched within ``enrichment_cooldown`` seconds
- the first failed call opens a process-wide circuit breaker and every call
  is skipped until it closes by itself

The in-flight set, the cooldown map and the breaker live on the shared
``ReconciliationContext``.
"""

import asyncio
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional, Protocol, Set

import aiohttp

from common.metrics import ENRICHMENT_JOBS_TOTAL
from common.settings import settings
from common.structured_logging import get_logger

from .context import ReconciliationContext
from .covers import is_bad_cover_url
from .descriptions import PoorDescriptionPredicate
from .errors import SystemicEnrichmentFailure, is_network_error
from .models import BookRecord, EnrichmentJob, EnrichmentReport, EnrichmentResponse, HydratedFields

logger = get_logger(__name__)


class EnrichmentEntryPoint(Protocol):
    async def __call__(self, job: EnrichmentJob) -> EnrichmentResponse: ...


def needs_enrichment(record: BookRecord, predicate: PoorDescriptionPredicate) -> bool:
    return is_bad_cover_url(record.cover_url) or not record.total_pages or predicate(record.description)


def apply_metadata(
    record: BookRecord,
    metadata: Optional[HydratedFields],
    predicate: Optional[PoorDescriptionPredicate] = None,
) -> BookRecord:
    """Copy of *record* with returned values filled into its missing fields only.

    A placeholder cover or a poor description counts as missing.
    """
    if metadata is None:
        return record
    predicate = predicate or PoorDescriptionPredicate()
    missing = {
        "cover_url": is_bad_cover_url(record.cover_url),
        "total_pages": not record.total_pages,
        "description": predicate(record.description),
    }
    update = {}
    for field, value in metadata.field_values().items():
        if value is None:
            continue
        if missing.get(field, getattr(record, field) is None):
            update[field] = value
    return record.model_copy(update=update)


class RemoteEnrichmentClient:
    """Calls the catalog API's ``POST /enrich``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.enrichment_api_url).rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout or settings.enrichment_timeout

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __call__(self, job: EnrichmentJob) -> EnrichmentResponse:
        session = await self._get_session()
        payload = job.model_dump(by_alias=True, exclude_none=True)
        try:
            async with session.post(f"{self.base_url}/enrich", json=payload) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise SystemicEnrichmentFailure(
                        f"Enrichment endpoint returned {response.status}: {body[:200]}",
                        status=response.status,
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SystemicEnrichmentFailure(f"{type(e).__name__}: {e}", network=True) from e
        return EnrichmentResponse.model_validate(data)


class LocalEnrichmentEntryPoint:
    """Runs the hydration pipeline in-process."""

    def __init__(self, pipeline):
        self.pipeline = pipeline

    async def __call__(self, job: EnrichmentJob) -> EnrichmentResponse:
        metadata = await self.pipeline.hydrate(job.book_id)
        return EnrichmentResponse(ok=True, metadata=metadata)


class EnrichmentScheduler:
    def __init__(
        self,
        entry_point: EnrichmentEntryPoint,
        context: Optional[ReconciliationContext] = None,
        *,
        enabled: Optional[bool] = None,
        on_result: Optional[Callable[[str, BookRecord], None]] = None,
    ):
        self.entry_point = entry_point
        self.context = context or ReconciliationContext.from_settings()
        self.enabled = settings.enrichment_enabled if enabled is None else enabled
        self.on_result = on_result
        self._background: Set[asyncio.Task] = set()

    def scan(self, records: Iterable[BookRecord]) -> List[BookRecord]:
        """Records worth enriching, one per id, in input order."""
        seen = set()
        picked = []
        for record in records:
            if not record.id or record.id in seen or not record.is_usable:
                continue
            if needs_enrichment(record, self.context.poor_description):
                seen.add(record.id)
                picked.append(record)
        return picked

    async def enqueue_enrichment(self, records: Iterable[BookRecord]) -> EnrichmentReport:
        report = EnrichmentReport()
        if not self.enabled:
            report.disabled = True
            logger.info("Auto-enrichment disabled")
            return report

        queue: Deque[BookRecord] = deque()
        for record in self.scan(records):
            if record.id in self.context.enrichment_in_flight:
                report.skipped_in_flight += 1
            elif self.context.in_cooldown(record.id):
                report.skipped_cooldown += 1
            else:
                queue.append(record)

        report.queued = len(queue)
        if not queue:
            return report

        workers = min(self.context.enrichment_concurrency, len(queue))
        logger.info("Starting enrichment pass", extra={"queued": len(queue), "workers": workers})
        await asyncio.gather(*(self._worker(queue, report) for _ in range(workers)))
        logger.info("Enrichment pass finished", extra=report.model_dump(exclude={"updated"}))
        return report

    def schedule(self, records: Iterable[BookRecord]) -> asyncio.Task:
        """Run ``enqueue_enrichment`` in the background."""
        task = asyncio.ensure_future(self.enqueue_enrichment(list(records)))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _worker(self, queue: Deque[BookRecord], report: EnrichmentReport) -> None:
        ctx = self.context
        while queue:
            record = queue.popleft()
            book_id = record.id

            # no await between these checks and marking the record in flight
            if book_id in ctx.enrichment_in_flight:
                report.skipped_in_flight += 1
                continue
            if ctx.in_cooldown(book_id):
                report.skipped_cooldown += 1
                continue
            if ctx.breaker.is_open:
                report.skipped_breaker += 1
                ENRICHMENT_JOBS_TOTAL.labels(status="skipped_breaker").inc()
                continue
            ctx.enrichment_in_flight.add(book_id)
            ctx.enrichment_last_run[book_id] = ctx.clock()

            try:
                response = await self.entry_point(EnrichmentJob.from_record(record))
                if not response.ok:
                    raise SystemicEnrichmentFailure(response.error or "Enrichment reported failure")
            except Exception as e:
                report.failed += 1
                failure_class = "network" if is_network_error(e) else "other"
                ENRICHMENT_JOBS_TOTAL.labels(status="failed").inc()
                logger.warning(
                    "Enrichment call failed",
                    extra={"book_id": book_id, "failure_class": failure_class, "error": str(e)},
                )
                ctx.breaker.trip(failure_class, str(e))
            else:
                report.enriched += 1
                ENRICHMENT_JOBS_TOTAL.labels(status="enriched").inc()
                updated = apply_metadata(record, response.metadata, ctx.poor_description)
                report.updated[book_id] = updated
                if self.on_result is not None:
                    self.on_result(book_id, updated)
            finally:
                ctx.enrichment_in_flight.discard(book_id)
