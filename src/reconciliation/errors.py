"""
Error taxonomy for book identity and metadata reconciliation.

Only ``NotFound`` ever escapes the hydration pipeline; source failures are
logged and fall through, and like toggle failures are surfaced to the caller
through the synchronizer's error callback.
"""

import asyncio
from typing import Any, Dict, Optional

import aiohttp


class ReconciliationError(Exception):
    """Base exception for reconciliation errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "error_code": self.error_code, "details": self.details}


class NotFound(ReconciliationError):
    """Record id does not exist in the catalog store."""

    def __init__(self, book_id: str):
        super().__init__(
            message=f"Book {book_id} not found",
            error_code="NOT_FOUND",
            details={"book_id": book_id},
            http_status=404,
        )
        self.book_id = book_id


class SourceLookupFailed(ReconciliationError):
    """A bibliographic source lookup failed after retries."""

    def __init__(self, source: str, operation: str, reason: str, status: Optional[int] = None):
        super().__init__(
            message=f"{source} {operation} failed: {reason}",
            error_code="SOURCE_LOOKUP_FAILED",
            details={"source": source, "operation": operation, "status": status},
            http_status=502,
        )
        self.source = source
        self.operation = operation
        self.status = status


class DuplicateConflict(ReconciliationError):
    """The server reports the like already exists."""

    def __init__(self, book_key: str, message: str = "Like already exists"):
        super().__init__(
            message=message,
            error_code="DUPLICATE_CONFLICT",
            details={"book_key": book_key},
            http_status=409,
        )
        self.book_key = book_key


class SystemicEnrichmentFailure(ReconciliationError):
    """Remote enrichment call failed; trips the circuit breaker."""

    def __init__(self, message: str, network: bool = False, status: Optional[int] = None):
        super().__init__(
            message=message,
            error_code="ENRICHMENT_FAILURE",
            details={"network": network, "status": status},
            http_status=502,
        )
        self.network = network
        self.status = status


class ValidationError(ReconciliationError):
    """Malformed identifier or request field."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={"field": field} if field else None,
            http_status=400,
        )
        self.field = field


class ConfigurationError(ReconciliationError):
    """Required configuration is missing."""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else None,
            http_status=500,
        )
        self.setting = setting


_NETWORK_MARKERS = (
    "cors",
    "failed to send a request",
    "failed to fetch",
    "networkerror",
    "err_failed",
)


def is_network_error(exc: BaseException) -> bool:
    """Best-effort classification of transport-level failures, for logging."""
    if isinstance(exc, SystemicEnrichmentFailure):
        return exc.network
    if isinstance(exc, (aiohttp.ClientConnectionError, asyncio.TimeoutError, ConnectionError)):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _NETWORK_MARKERS)
