"""
Social counters keyed by canonical book key.

The like button updates immediately, then reconciles with the server. A tap is
dropped when the key is unknown, when a toggle for the key is already in
flight, or when it lands within the throttle window of the last accepted tap.
Every view showing the same book subscribes to its key and receives the same
updates.
"""

import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

import aiohttp

from common.metrics import LIKE_TOGGLES_TOTAL
from common.settings import settings
from common.structured_logging import get_logger

from .errors import DuplicateConflict, ReconciliationError
from .identity import UNKNOWN_KEY
from .models import SocialCounterState, SocialUpdate, ToggleOutcome, ToggleResult

logger = get_logger(__name__)

Subscriber = Callable[[SocialUpdate], None]


class LikeToggleEndpoint(Protocol):
    async def toggle(self, key: str) -> ToggleResult: ...

    async def fetch_counts(self, keys: List[str]) -> Dict[str, SocialCounterState]: ...


class SocialApiClient:
    """aiohttp client for the catalog API's social endpoints."""

    def __init__(
        self,
        user_id: str,
        base_url: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: Optional[float] = None,
    ):
        self.user_id = user_id
        self.base_url = (base_url or settings.social_api_url).rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout or settings.social_request_timeout

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"X-User-Id": self.user_id},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def toggle(self, key: str) -> ToggleResult:
        session = await self._get_session()
        async with session.post(
            f"{self.base_url}/likes/toggle", json={"book_key": key}, headers={"X-User-Id": self.user_id}
        ) as response:
            if response.status == 409:
                raise DuplicateConflict(key)
            if response.status >= 400:
                body = await response.text()
                raise ReconciliationError(
                    f"Like toggle failed with {response.status}: {body[:200]}",
                    error_code="TOGGLE_FAILED",
                    http_status=response.status,
                )
            return ToggleResult.model_validate(await response.json(content_type=None))

    async def fetch_counts(self, keys: List[str]) -> Dict[str, SocialCounterState]:
        keys = [k for k in keys if k and k != UNKNOWN_KEY]
        if not keys:
            return {}
        session = await self._get_session()
        async with session.get(
            f"{self.base_url}/social/counts",
            params=[("keys", k) for k in keys],
            headers={"X-User-Id": self.user_id},
        ) as response:
            if response.status >= 400:
                raise ReconciliationError(
                    f"Social counts lookup failed with {response.status}",
                    error_code="COUNTS_FAILED",
                    http_status=response.status,
                )
            data = await response.json(content_type=None)
        return {key: SocialCounterState.model_validate(value) for key, value in data.items()}


class Subscription:
    def __init__(self, registry: Dict[str, List[Subscriber]], key: str, callback: Subscriber):
        self._registry = registry
        self.key = key
        self.callback = callback

    def close(self) -> None:
        callbacks = self._registry.get(self.key)
        if callbacks and self.callback in callbacks:
            callbacks.remove(self.callback)
            if not callbacks:
                del self._registry[self.key]


class SocialCounterSynchronizer:
    def __init__(
        self,
        endpoint: LikeToggleEndpoint,
        *,
        throttle_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        notify_error: Optional[Callable[[str, str], None]] = None,
    ):
        self.endpoint = endpoint
        self.throttle_seconds = settings.like_throttle_seconds if throttle_seconds is None else throttle_seconds
        self.clock = clock
        self.notify_error = notify_error
        self._states: Dict[str, SocialCounterState] = {}
        self._in_flight: Set[str] = set()
        self._last_tap: Dict[str, float] = {}
        self._subscribers: Dict[str, List[Subscriber]] = {}

    # --- state and pub/sub ------------------------------------------------

    def state(self, key: str) -> SocialCounterState:
        return self._states.get(key, SocialCounterState())

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def seed(self, key: str, likes: int = 0, comments: int = 0, is_liked: bool = False) -> None:
        self._states[key] = SocialCounterState(likes=max(0, likes), comments=max(0, comments), is_liked=is_liked)

    def subscribe(self, key: str, callback: Subscriber) -> Subscription:
        self._subscribers.setdefault(key, []).append(callback)
        return Subscription(self._subscribers, key, callback)

    def _publish(self, key: str, confirmed: bool = True) -> None:
        state = self.state(key)
        update = SocialUpdate(key=key, confirmed=confirmed, **state.model_dump())
        for callback in list(self._subscribers.get(key, [])):
            try:
                callback(update)
            except Exception:
                logger.error("Social subscriber failed", exc_info=True, extra={"book_key": key})

    async def refresh(self, keys: Iterable[str]) -> None:
        """Load authoritative counts for *keys* and broadcast them."""
        counts = await self.endpoint.fetch_counts([k for k in keys if k and k != UNKNOWN_KEY])
        for key, state in counts.items():
            if key in self._in_flight:
                continue
            self._states[key] = state
            self._publish(key)

    # --- toggle -----------------------------------------------------------

    def _accept_tap(self, key: str) -> bool:
        if not key or key == UNKNOWN_KEY:
            LIKE_TOGGLES_TOTAL.labels(outcome="rejected_unknown").inc()
            return False
        if key in self._in_flight:
            LIKE_TOGGLES_TOTAL.labels(outcome="rejected_in_flight").inc()
            return False
        now = self.clock()
        last = self._last_tap.get(key)
        if last is not None and now - last < self.throttle_seconds:
            LIKE_TOGGLES_TOTAL.labels(outcome="rejected_throttled").inc()
            return False
        self._last_tap[key] = now
        self._in_flight.add(key)
        return True

    async def toggle_like(self, key: str) -> Optional[ToggleOutcome]:
        """Toggle the current user's like on *key*.

        Returns None when the tap was dropped; otherwise the outcome with the
        reconciled (or rolled back) state.
        """
        if not self._accept_tap(key):
            return None

        previous = self.state(key)
        error = None
        try:
            optimistic_liked = not previous.is_liked
            optimistic_likes = max(0, previous.likes + (1 if optimistic_liked else -1))
            self._states[key] = previous.model_copy(update={"is_liked": optimistic_liked, "likes": optimistic_likes})
            self._publish(key, confirmed=False)

            try:
                result = await self.endpoint.toggle(key)
            except DuplicateConflict:
                LIKE_TOGGLES_TOTAL.labels(outcome="duplicate").inc()
                logger.info("Like already recorded on server", extra={"book_key": key})
                self._states[key] = previous.model_copy(update={"is_liked": True, "likes": optimistic_likes})
            except Exception as e:
                LIKE_TOGGLES_TOTAL.labels(outcome="failed").inc()
                logger.warning(
                    "Like toggle failed, rolling back",
                    extra={"book_key": key, "error_type": type(e).__name__, "error": str(e)},
                )
                self._states[key] = previous
                error = str(e) or type(e).__name__
            else:
                LIKE_TOGGLES_TOTAL.labels(outcome="success").inc()
                likes = result.likes if result.likes is not None else optimistic_likes
                self._states[key] = previous.model_copy(update={"is_liked": result.liked, "likes": max(0, likes)})
        finally:
            self._in_flight.discard(key)

        self._publish(key)
        if error is not None:
            if self.notify_error is not None:
                self.notify_error(key, "Could not update your like. Please try again.")
            return ToggleOutcome(key=key, state=previous, ok=False, error=error)
        return ToggleOutcome(key=key, state=self.state(key))
