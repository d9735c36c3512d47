"""Shared aiohttp plumbing for the bibliographic source adapters."""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from common.metrics import SOURCE_LOOKUPS_TOTAL
from common.settings import settings
from common.structured_logging import get_logger

from ..errors import SourceLookupFailed

logger = get_logger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class HttpSource:
    """Owns one ``aiohttp.ClientSession`` and retries transient failures.

    404 answers are a normal "not found" and come back as ``None``; anything
    still failing after ``max_retries`` attempts raises ``SourceLookupFailed``.
    """

    source_name = "http"

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = None,
        max_retries: int = None,
        retry_delay: float = None,
    ):
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout if timeout is not None else settings.source_request_timeout
        self.max_retries = max_retries if max_retries is not None else settings.source_max_retries
        self.retry_delay = retry_delay if retry_delay is not None else settings.source_retry_delay

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": settings.source_user_agent},
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(
        self,
        operation: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        method: str = "GET",
    ) -> Optional[Any]:
        """Return decoded JSON (or ``True`` for HEAD), ``None`` when not found."""
        session = await self._get_session()
        last_error = "unknown error"
        status = None

        for attempt in range(self.max_retries):
            try:
                async with session.request(method, url, params=params) as response:
                    status = response.status
                    if status == 200:
                        SOURCE_LOOKUPS_TOTAL.labels(
                            source=self.source_name, operation=operation, status="success"
                        ).inc()
                        if method == "HEAD":
                            return True
                        return await response.json(content_type=None)
                    if status == 404:
                        SOURCE_LOOKUPS_TOTAL.labels(
                            source=self.source_name, operation=operation, status="not_found"
                        ).inc()
                        return None
                    if status in RETRYABLE_STATUSES:
                        last_error = f"HTTP {status}"
                        logger.warning(
                            f"{self.source_name} returned {status}, retrying",
                            extra={"url": url, "attempt": attempt + 1, "operation": operation},
                        )
                    else:
                        SOURCE_LOOKUPS_TOTAL.labels(
                            source=self.source_name, operation=operation, status="error"
                        ).inc()
                        raise SourceLookupFailed(self.source_name, operation, f"HTTP {status}", status)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"{self.source_name} request failed",
                    extra={"url": url, "attempt": attempt + 1, "operation": operation, "error": str(e)},
                )

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        SOURCE_LOOKUPS_TOTAL.labels(
            source=self.source_name, operation=operation, status="error"
        ).inc()
        raise SourceLookupFailed(self.source_name, operation, last_error, status)
