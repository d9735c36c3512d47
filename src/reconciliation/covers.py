"""Cover URL resolution and placeholder detection."""

import re
from typing import Mapping, MutableMapping, Optional

from common.settings import settings

from .identity import clean_isbn

PLACEHOLDER_COVER = "/placeholder-cover.svg"

_BAD_COVER_MARKERS = ("image not available", "placeholder", "no-cover", "nocover", "no_cover")
_EDGE_CURL_RE = re.compile(r"&?edge=curl")


def upgrade_google_thumbnail(url: Optional[str], small: bool = False) -> Optional[str]:
    """Serve Google thumbnails over https at the largest zoom, without the page curl."""
    if not url:
        return None
    upgraded = url.replace("http://", "https://", 1)
    upgraded = upgraded.replace("zoom=5" if small else "zoom=1", "zoom=0")
    upgraded = _EDGE_CURL_RE.sub("", upgraded)
    return upgraded.replace("?&", "?")


def openlibrary_cover_by_id(cover_id: Optional[int], size: str = "L") -> Optional[str]:
    if not cover_id:
        return None
    return f"{settings.openlibrary_covers_url}/b/id/{cover_id}-{size}.jpg?default=false"


def openlibrary_cover_by_isbn(isbn: Optional[str], size: str = "L") -> Optional[str]:
    cleaned = clean_isbn(isbn)
    if not cleaned:
        return None
    return f"{settings.openlibrary_covers_url}/b/isbn/{cleaned}-{size}.jpg?default=false"


def is_bad_cover_url(url: Optional[str]) -> bool:
    """True for empty, placeholder or non-image cover URLs."""
    if not url or not url.strip():
        return True
    lowered = url.strip().lower()
    if lowered == PLACEHOLDER_COVER:
        return True
    if any(marker in lowered for marker in _BAD_COVER_MARKERS):
        return True
    if lowered.startswith("data:") and not lowered.startswith("data:image/"):
        return True
    return False


def resolve_cover_url(
    image_links: Optional[Mapping[str, str]] = None,
    isbn13: Optional[str] = None,
    isbn10: Optional[str] = None,
    cache: Optional[MutableMapping[str, str]] = None,
) -> str:
    """Pick a display cover: Google thumbnail, Open Library by ISBN, then the placeholder.

    Results are memoised by cleaned ISBN in *cache* when one is supplied.
    """
    image_links = image_links or {}
    clean13 = clean_isbn(isbn13)
    clean10 = clean_isbn(isbn10)
    cache_key = clean13 or clean10

    if cache is not None and cache_key and cache_key in cache:
        return cache[cache_key]

    url = upgrade_google_thumbnail(image_links.get("thumbnail"))
    if not url:
        url = upgrade_google_thumbnail(image_links.get("smallThumbnail"), small=True)
    if not url and cache_key:
        # ISBN-13 first
        url = openlibrary_cover_by_isbn(cache_key)
    if not url:
        url = PLACEHOLDER_COVER

    if cache is not None and cache_key:
        cache[cache_key] = url
    return url
