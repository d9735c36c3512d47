"""
Open Library adapter, the secondary bibliographic source.

Beyond search it answers the hydration pipeline's narrower questions: edition
data by ISBN, page counts from the Books API, cover URLs, and work or edition
descriptions. ISBN edition lookups are cached for a week because Open Library
rate limits aggressively.
"""

from typing import Any, Dict, List, Optional

import aiohttp

from common.redis_utils import ResponseCache
from common.settings import settings
from common.structured_logging import get_logger

from ..covers import openlibrary_cover_by_id, openlibrary_cover_by_isbn
from ..descriptions import clean_openlibrary_description
from ..identity import clean_isbn, openlibrary_path
from ..models import BookRecord, CoverResult, EditionInfo
from .base import HttpSource

logger = get_logger(__name__)

SEARCH_FIELDS = "title,author_name,isbn,cover_i,number_of_pages_median,key,first_publish_year"
SEARCH_PAGE_SIZE = 20


def _first_int(value) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def parse_search_doc(doc: Dict[str, Any]) -> Optional[BookRecord]:
    title = (doc.get("title") or "").strip()
    if not title:
        return None
    isbn13 = None
    isbn10 = None
    for raw in doc.get("isbn") or []:
        cleaned = clean_isbn(raw)
        if cleaned and len(cleaned) == 13 and isbn13 is None:
            isbn13 = cleaned
        elif cleaned and len(cleaned) == 10 and isbn10 is None:
            isbn10 = cleaned
        if isbn13 and isbn10:
            break
    cover_id = _first_int(doc.get("cover_i"))
    return BookRecord(
        title=title,
        authors=doc.get("author_name") or [],
        isbn13=isbn13,
        isbn10=isbn10,
        openlibrary_work_key=doc.get("key"),
        openlibrary_cover_id=cover_id,
        cover_url=openlibrary_cover_by_id(cover_id),
        total_pages=doc.get("number_of_pages_median"),
    )


class OpenLibrarySource(HttpSource):
    source_name = "open_library"

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: Optional[str] = None,
        cache: Optional[ResponseCache] = None,
        **kwargs,
    ):
        super().__init__(session=session, **kwargs)
        self.base_url = (base_url or settings.openlibrary_base_url).rstrip("/")
        self.cache = cache

    async def search_by_text(self, query: str, page: int = 1) -> List[BookRecord]:
        query = (query or "").strip()
        if not query:
            return []
        data = await self._request(
            "search",
            f"{self.base_url}/search.json",
            params={"q": query, "fields": SEARCH_FIELDS, "limit": SEARCH_PAGE_SIZE, "page": page},
        )
        docs = (data or {}).get("docs") or []
        return [r for r in (parse_search_doc(doc) for doc in docs) if r is not None]

    async def get_edition_by_isbn(self, isbn: str) -> Optional[EditionInfo]:
        cleaned = clean_isbn(isbn)
        if not cleaned:
            return None

        cache_key = f"isbn:{cleaned}"
        if self.cache is not None:
            found, cached = await self.cache.get(cache_key)
            if found:
                return EditionInfo.model_validate(cached) if cached else None

        data = await self._request("edition_by_isbn", f"{self.base_url}/isbn/{cleaned}.json")
        edition = None
        if data:
            works = data.get("works") or []
            covers = [c for c in (data.get("covers") or []) if _first_int(c)]
            edition = EditionInfo(
                pages=_first_int(data.get("number_of_pages")),
                cover_id=covers[0] if covers else None,
                work_key=works[0].get("key") if works else None,
                edition_key=data.get("key"),
            )

        if self.cache is not None:
            await self.cache.set(
                cache_key,
                edition.model_dump() if edition else None,
                settings.isbn_cache_ttl_seconds,
            )
        return edition

    async def get_pages_from_books_api(self, isbn: str) -> Optional[int]:
        cleaned = clean_isbn(isbn)
        if not cleaned:
            return None
        bibkey = f"ISBN:{cleaned}"
        data = await self._request(
            "books_api",
            f"{self.base_url}/api/books",
            params={"bibkeys": bibkey, "format": "json", "jscmd": "data"},
        )
        return _first_int(((data or {}).get(bibkey) or {}).get("number_of_pages"))

    async def get_cover_url(self, cover_id: Optional[int] = None, isbn: Optional[str] = None) -> CoverResult:
        """Cover by id is trusted as-is; cover by ISBN is confirmed with a HEAD request."""
        if cover_id:
            return CoverResult(url=openlibrary_cover_by_id(cover_id), source="open_library_cover_id")
        url = openlibrary_cover_by_isbn(isbn)
        if url and await self._request("cover_by_isbn", url, method="HEAD"):
            return CoverResult(url=url, source="open_library_isbn")
        return CoverResult()

    async def _description(self, operation: str, path: Optional[str]) -> Optional[str]:
        if not path:
            return None
        data = await self._request(operation, f"{self.base_url}{path}.json")
        return clean_openlibrary_description((data or {}).get("description"))

    async def get_work_description(self, work_key: str) -> Optional[str]:
        return await self._description("work_description", openlibrary_path(work_key, "works"))

    async def get_edition_description(self, edition_key: str) -> Optional[str]:
        return await self._description("edition_description", openlibrary_path(edition_key, "books"))
