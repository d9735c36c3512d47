"""Bibliographic source adapters."""

from .google_books import GoogleBooksSource
from .open_library import OpenLibrarySource
from .search import BookSearchService, LatestOnlySearch

__all__ = [
    "GoogleBooksSource",
    "OpenLibrarySource",
    "BookSearchService",
    "LatestOnlySearch",
]
