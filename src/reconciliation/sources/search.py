"""Abortable text search across both sources."""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from common.structured_logging import get_logger

from ..identity import UNKNOWN_KEY, canonical_key
from ..models import BookRecord

logger = get_logger(__name__)

T = TypeVar("T")


class LatestOnlySearch:
    """Only the newest lookup per slot is allowed to finish.

    Starting a lookup in a slot cancels the one already running there; the
    superseded caller gets ``None`` back rather than an exception.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    async def run(self, slot: str, factory: Callable[[], Awaitable[T]]) -> Optional[T]:
        previous = self._tasks.get(slot)
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.ensure_future(factory())
        self._tasks[slot] = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._tasks.get(slot) is not task:
                logger.debug("Discarded superseded search", extra={"slot": slot})
                return None
            raise
        finally:
            if self._tasks.get(slot) is task:
                del self._tasks[slot]

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()


class BookSearchService:
    """Google first, Open Library second, deduplicated by canonical key."""

    def __init__(self, google, open_library, searcher: Optional[LatestOnlySearch] = None):
        self.google = google
        self.open_library = open_library
        self.searcher = searcher or LatestOnlySearch()

    async def _search(self, query: str) -> List[BookRecord]:
        results: List[BookRecord] = []
        seen = set()
        for source in (self.google, self.open_library):
            if source is None:
                continue
            try:
                records = await source.search_by_text(query)
            except Exception as e:
                logger.warning(
                    "Search source failed",
                    extra={"source": getattr(source, "source_name", type(source).__name__), "error": str(e)},
                )
                continue
            for record in records:
                key = canonical_key(record)
                if key != UNKNOWN_KEY and key in seen:
                    continue
                seen.add(key)
                results.append(record)
        return results

    async def search(self, query: str, slot: str = "default") -> Optional[List[BookRecord]]:
        """Return merged results, or ``None`` when a newer search in *slot* superseded this one."""
        query = (query or "").strip()
        if not query:
            return []
        return await self.searcher.run(slot, lambda: self._search(query))
