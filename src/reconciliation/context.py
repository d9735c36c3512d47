"""
Process-scoped reconciliation state.

Every cache, guard set and timer the hydration pipeline and the enrichment
scheduler rely on lives on a ``ReconciliationContext`` that is passed in at
construction. Tests build a fresh context (usually with a fake clock); the
services build one per process with ``ReconciliationContext.from_settings()``.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Set

from common.metrics import CIRCUIT_BREAKER_TRIPS_TOTAL
from common.settings import settings
from common.structured_logging import get_logger

from .cache import TTLCache
from .descriptions import PoorDescriptionPredicate
from .identity import UNKNOWN_KEY, canonical_key, normalize_openlibrary_key, split_isbns
from .models import BookRecord

logger = get_logger(__name__)


@dataclass
class CooldownCircuitBreaker:
    """Opens on a single failure and closes by itself after ``cooldown`` seconds.

    There is no half-open probing and no manual reset: while open, callers
    skip their work; once the cooldown has elapsed the next check passes.
    """

    cooldown: float = 120.0
    clock: Callable[[], float] = time.monotonic
    _open_until: float = field(default=0.0, init=False)
    _last_reason: Optional[str] = field(default=None, init=False)

    @property
    def is_open(self) -> bool:
        return self.clock() < self._open_until

    @property
    def retry_after(self) -> float:
        return max(0.0, self._open_until - self.clock())

    def trip(self, failure_class: str, reason: str = "") -> None:
        self._open_until = self.clock() + self.cooldown
        self._last_reason = reason
        CIRCUIT_BREAKER_TRIPS_TOTAL.labels(failure_class=failure_class).inc()
        logger.warning(
            "Enrichment circuit breaker opened",
            extra={
                "failure_class": failure_class,
                "reason": reason,
                "cooldown_seconds": self.cooldown,
            },
        )


@dataclass
class ReconciliationContext:
    hydration_ttl: float = 86400.0
    description_ttl: float = 86400.0
    description_failure_ttl: float = 3600.0
    enrichment_concurrency: int = 3
    enrichment_cooldown: float = 60.0
    breaker_cooldown: float = 120.0
    poor_description: PoorDescriptionPredicate = field(default_factory=PoorDescriptionPredicate)
    clock: Callable[[], float] = time.monotonic

    hydration_cache: TTLCache = field(init=False)
    description_cache: TTLCache = field(init=False)
    breaker: CooldownCircuitBreaker = field(init=False)
    cover_url_cache: Dict[str, str] = field(default_factory=dict)
    enrichment_in_flight: Set[str] = field(default_factory=set)
    enrichment_last_run: Dict[str, float] = field(default_factory=dict)
    _hydrated_at: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        self.hydration_cache = TTLCache(self.hydration_ttl, clock=self.clock)
        self.description_cache = TTLCache(self.description_ttl, clock=self.clock)
        self.breaker = CooldownCircuitBreaker(self.breaker_cooldown, clock=self.clock)

    @classmethod
    def from_settings(cls, s=settings, clock: Callable[[], float] = time.monotonic) -> "ReconciliationContext":
        return cls(
            hydration_ttl=s.hydration_ttl_seconds,
            description_ttl=s.description_cache_ttl_seconds,
            description_failure_ttl=s.description_failure_ttl_seconds,
            enrichment_concurrency=s.enrichment_concurrency,
            enrichment_cooldown=s.enrichment_cooldown_seconds,
            breaker_cooldown=s.enrichment_breaker_seconds,
            poor_description=PoorDescriptionPredicate.from_settings(s),
            clock=clock,
        )

    # --- hydration markers ------------------------------------------------

    def mark_hydrated(self, book_id: str) -> None:
        self._hydrated_at[book_id] = self.clock()

    def was_recently_hydrated(self, book_id: str) -> bool:
        stamp = self._hydrated_at.get(book_id)
        if stamp is None:
            return False
        if self.clock() - stamp >= self.hydration_ttl:
            del self._hydrated_at[book_id]
            return False
        return True

    @staticmethod
    def hydration_cache_key(record: BookRecord) -> Optional[str]:
        """Work key, then edition key, then canonical key."""
        work = normalize_openlibrary_key(record.openlibrary_work_key)
        if work:
            return f"work:{work}"
        edition = normalize_openlibrary_key(record.openlibrary_edition_key)
        if edition:
            return f"edition:{edition}"
        key = canonical_key(record)
        if key != UNKNOWN_KEY:
            return f"key:{key}"
        if record.id:
            return f"id:{record.id}"
        return None

    @staticmethod
    def edition_identity(record: BookRecord) -> Optional[str]:
        """Edition key, then ISBN, then Google id, then catalog id."""
        edition = normalize_openlibrary_key(record.openlibrary_edition_key)
        if edition:
            return f"edition:{edition}"
        isbn13, isbn10 = split_isbns(record)
        if isbn13 or isbn10:
            return f"isbn:{isbn13 or isbn10}"
        if record.google_books_id:
            return f"google:{record.google_books_id}"
        if record.id:
            return f"id:{record.id}"
        return None

    # --- enrichment guards ------------------------------------------------

    def in_cooldown(self, book_id: str) -> bool:
        last = self.enrichment_last_run.get(book_id)
        return last is not None and self.clock() - last < self.enrichment_cooldown

    def reset(self) -> None:
        """Drop every cache and guard (tests, CLI reloads)."""
        self.hydration_cache.clear()
        self.description_cache.clear()
        self.cover_url_cache.clear()
        self.enrichment_in_flight.clear()
        self.enrichment_last_run.clear()
        self._hydrated_at.clear()
