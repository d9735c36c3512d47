"""
Google Books adapter, the primary bibliographic source.

Provides text search, volume lookup by id and lookup by ISBN, each returning
normalized ``BookRecord`` objects. Volume lookups are cached through
``ResponseCache`` (Redis with in-process fallback).
"""

from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from common.redis_utils import ResponseCache
from common.settings import settings
from common.structured_logging import get_logger

from ..covers import upgrade_google_thumbnail
from ..descriptions import clean_description
from ..errors import ConfigurationError
from ..identity import clean_isbn
from ..models import BookRecord
from .base import HttpSource

logger = get_logger(__name__)

MAX_SEARCH_RESULTS = 20


def get_isbns(volume_info: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(isbn13, isbn10)`` from ``industryIdentifiers``."""
    isbn13 = None
    isbn10 = None
    for identifier in volume_info.get("industryIdentifiers") or []:
        kind = identifier.get("type")
        value = clean_isbn(identifier.get("identifier"))
        if kind == "ISBN_13" and value and len(value) == 13:
            isbn13 = value
        elif kind == "ISBN_10" and value and len(value) == 10:
            isbn10 = value
    return isbn13, isbn10


def parse_volume(item: Dict[str, Any]) -> Optional[BookRecord]:
    """Normalize one ``volumes`` item; items without a title are dropped."""
    volume_info = item.get("volumeInfo") or {}
    title = (volume_info.get("title") or "").strip()
    if not title:
        return None
    subtitle = (volume_info.get("subtitle") or "").strip()
    isbn13, isbn10 = get_isbns(volume_info)
    image_links = volume_info.get("imageLinks") or {}
    cover = upgrade_google_thumbnail(image_links.get("thumbnail")) or upgrade_google_thumbnail(
        image_links.get("smallThumbnail"), small=True
    )
    return BookRecord(
        title=f"{title}: {subtitle}" if subtitle else title,
        authors=volume_info.get("authors") or [],
        isbn13=isbn13,
        isbn10=isbn10,
        google_books_id=item.get("id"),
        cover_url=cover,
        total_pages=volume_info.get("pageCount"),
        description=clean_description(volume_info.get("description")),
    )


class GoogleBooksSource(HttpSource):
    source_name = "google_books"

    def __init__(
        self,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
        cache: Optional[ResponseCache] = None,
        **kwargs,
    ):
        api_key = api_key if api_key is not None else settings.google_books_api_key
        if not api_key:
            raise ConfigurationError(
                "Google Books API key is not configured", setting="GOOGLE_BOOKS_API_KEY"
            )
        super().__init__(session=session, **kwargs)
        self.api_key = api_key
        self.base_url = (base_url or settings.google_books_base_url).rstrip("/")
        self.cache = cache

    def _params(self, **params) -> Dict[str, Any]:
        return {**params, "key": self.api_key}

    async def search_by_text(self, query: str, max_results: int = MAX_SEARCH_RESULTS) -> List[BookRecord]:
        query = (query or "").strip()
        if not query:
            return []
        data = await self._request(
            "search",
            f"{self.base_url}/volumes",
            params=self._params(q=query, maxResults=min(max_results, 40), printType="books"),
        )
        items = (data or {}).get("items") or []
        records = [r for r in (parse_volume(item) for item in items) if r is not None]
        logger.info("Google Books search completed", extra={"query": query, "result_count": len(records)})
        return records

    async def get_by_id(self, volume_id: str) -> Optional[BookRecord]:
        if not volume_id:
            return None
        cache_key = f"volume:{volume_id}"
        if self.cache is not None:
            found, cached = await self.cache.get(cache_key)
            if found:
                return BookRecord.model_validate(cached) if cached else None

        data = await self._request("get_by_id", f"{self.base_url}/volumes/{volume_id}", params=self._params())
        record = parse_volume(data) if data else None

        if self.cache is not None:
            await self.cache.set(
                cache_key,
                record.model_dump(mode="json") if record else None,
                settings.volume_cache_ttl_seconds,
            )
        return record

    async def search_by_isbn(self, isbn: str) -> Optional[BookRecord]:
        cleaned = clean_isbn(isbn)
        if not cleaned:
            return None
        data = await self._request(
            "search_by_isbn", f"{self.base_url}/volumes", params=self._params(q=f"isbn:{cleaned}")
        )
        for item in (data or {}).get("items") or []:
            record = parse_volume(item)
            if record is not None:
                return record
        return None
