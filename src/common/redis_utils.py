"""Minimal async Redis JSON cache with graceful fallback.

redis>=5 bundles asyncio support via ``redis.asyncio``. If Redis is
unreachable every helper degrades to an in-process dictionary so lookups keep
working, just without sharing between processes.
"""
from __future__ import annotations

import json
import time
from typing import Any, Optional, Tuple

import redis.asyncio as redis

from .settings import settings as S
from .structured_logging import get_logger

logger = get_logger(__name__)


class ResponseCache:
    """JSON values under a key prefix, with TTL, in Redis or in-process.

    ``None`` is a legitimate cached value (a negative lookup), so reads return
    a ``(found, value)`` pair.
    """

    def __init__(self, prefix: str, url: Optional[str] = None, client: Optional["redis.Redis"] = None):
        self.prefix = prefix
        self.url = url or S.redis_url
        self._client = client
        self._initialised = client is not None
        self._fallback: dict[str, Tuple[float, str]] = {}

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def _init(self) -> Optional["redis.Redis"]:
        if self._initialised:
            return self._client
        self._initialised = True
        try:
            self._client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
            # test connection
            await self._client.ping()
            logger.info("Redis connection established", extra={"url": self.url, "prefix": self.prefix})
        except Exception:  # noqa: BLE001
            logger.warning("Redis unavailable, falling back to in-process cache", exc_info=True)
            self._client = None
        return self._client

    def _fallback_get(self, key: str) -> Tuple[bool, Any]:
        entry = self._fallback.get(key)
        if entry is None:
            return False, None
        expires_at, raw = entry
        if expires_at <= time.monotonic():
            del self._fallback[key]
            return False, None
        return True, json.loads(raw)

    async def get(self, key: str) -> Tuple[bool, Any]:
        """Return ``(found, value)`` for *key*."""
        full_key = self._key(key)
        client = await self._init()
        if client is None:
            return self._fallback_get(full_key)
        try:
            raw = await client.get(full_key)
        except Exception:
            logger.warning("Redis read failed, using fallback", exc_info=True, extra={"key": full_key})
            return self._fallback_get(full_key)
        if raw is None:
            return False, None
        return True, json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        full_key = self._key(key)
        raw = json.dumps(value, default=str)
        client = await self._init()
        if client is not None:
            try:
                await client.setex(full_key, ttl_seconds, raw)
                return
            except Exception:
                logger.warning("Failed to write to Redis, using fallback", exc_info=True, extra={"key": full_key})
        self._fallback[full_key] = (time.monotonic() + ttl_seconds, raw)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
