"""Description cleaning, fallback summaries and the poor-description check."""

import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

from common.settings import settings

MAX_DESCRIPTION_LENGTH = 2000
MAX_OPENLIBRARY_DESCRIPTION_LENGTH = 320

_TAG_RE = re.compile(r"<[^>]+>")
_URL_RE = re.compile(r"https?://\S+")
_MD_LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_ALSO_CONTAINED_RE = re.compile(r"also contained in:?.*$", re.IGNORECASE | re.DOTALL)
_DASH_RUN_RE = re.compile(r"-{2,}|[–—]{2,}")


def clean_description(description: Optional[str], max_length: int = MAX_DESCRIPTION_LENGTH) -> Optional[str]:
    """Clean and truncate book description."""
    if not description:
        return None

    # Remove HTML tags and excessive whitespace
    clean_desc = _TAG_RE.sub("", description)
    clean_desc = " ".join(clean_desc.split())

    if len(clean_desc) > max_length:
        clean_desc = clean_desc[: max_length - 3] + "..."

    return clean_desc if clean_desc else None


def clean_openlibrary_description(
    description, max_length: int = MAX_OPENLIBRARY_DESCRIPTION_LENGTH
) -> Optional[str]:
    """Open Library descriptions carry markdown links, source notes and
    "Also contained in" lists; keep only the prose."""
    if isinstance(description, dict):
        description = description.get("value")
    if not description or not isinstance(description, str):
        return None

    text = _MD_LINK_RE.sub(r"\1", description)
    text = _ALSO_CONTAINED_RE.sub("", text)
    text = _URL_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = _DASH_RUN_RE.sub(" ", text)
    text = " ".join(text.split()).strip(" -")

    if not text:
        return None
    if len(text) > max_length:
        text = text[: max_length - 1].rstrip() + "…"
    return text


def generate_fallback_summary(title: Optional[str], author: Optional[str], total_pages: Optional[int]) -> str:
    """Always returns a non-empty description built from the basics we have."""
    title = (title or "").strip() or "This book"
    author = (author or "").strip()

    opening = f"“{title}”"
    opening += f" is a book by {author}." if author else " is a book waiting to be discovered."
    if total_pages and total_pages > 0:
        middle = f" Across {total_pages} pages, it invites the reader into its story and ideas."
    else:
        middle = " It invites the reader into its story and ideas."
    closing = " Add it to your shelf to track your progress and share your thoughts."
    return opening + middle + closing


@dataclass
class PoorDescriptionPredicate:
    """Decides whether a stored description is worth replacing.

    A description is poor when it is missing, shorter than ``min_length`` or
    matches one of the template ``patterns`` (case-insensitive, full match).
    """

    min_length: int = 120
    patterns: Sequence[str] = field(default_factory=list)

    def __post_init__(self):
        self._compiled = [re.compile(p, re.IGNORECASE) for p in self.patterns]

    @classmethod
    def from_settings(cls, s=settings) -> "PoorDescriptionPredicate":
        return cls(min_length=s.poor_description_min_length, patterns=list(s.poor_description_patterns))

    def __call__(self, description: Optional[str]) -> bool:
        if not description:
            return True
        text = " ".join(description.split())
        if len(text) < self.min_length:
            return True
        return any(p.match(text) for p in self._compiled)
