import os
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from common.kafka_utils import close_producers
from common.metrics import REQUEST_COUNTER, REQUEST_LATENCY
from common.settings import settings as S
from common.structured_logging import SERVICE_NAME, get_logger, set_request_context
from reconciliation.errors import ReconciliationError
from reconciliation.models import EnrichmentResponse, SocialCounterState, ToggleResult

from .service import CatalogService, EnrichRequest, build_service

logger = get_logger(__name__)

_service: Optional[CatalogService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown tasks using FastAPI lifespan events."""
    global _service
    logger.info("Starting up catalog API")
    try:
        _service = build_service()
    except Exception:
        logger.error("Failed to start up catalog API", exc_info=True)
        raise

    # Application runs during this yield
    yield

    logger.info("Shutting down catalog API")
    await _service.close()
    await close_producers()
    _service = None


app = FastAPI(
    title="Reading Tracker Catalog API",
    description="Book metadata enrichment and social counters",
    version="1.0.0",
    lifespan=lifespan,
)

# Rate limiting configuration
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ReconciliationError)
async def _reconciliation_error_handler(request: Request, exc: ReconciliationError):
    return JSONResponse(status_code=exc.http_status, content={"ok": False, **exc.to_dict()})


def get_service() -> CatalogService:
    if _service is None:
        raise HTTPException(503, "Service not initialised")
    return _service


class ToggleRequest(BaseModel):
    book_key: str = Field(..., min_length=1, examples=["isbn:9780306406157"])


# --- endpoints ---------------------------------------------------------
@app.get("/health")
async def health():
    logger.debug("Health check requested")
    return {"status": "ok", "timestamp": time.time(), "enrichment_enabled": S.enrichment_enabled}


@app.post("/enrich", response_model=EnrichmentResponse, response_model_exclude_none=True)
async def enrich(body: EnrichRequest, service: CatalogService = Depends(get_service)):
    """Remote enrichment entry point used by the self-healing scheduler."""
    set_request_context()
    return await service.enrich(body)


@app.post("/likes/toggle", response_model=ToggleResult)
@limiter.limit(S.like_rate_limit)
async def toggle_like(
    request: Request,
    body: ToggleRequest,
    x_user_id: str = Header(...),
    service: CatalogService = Depends(get_service),
):
    set_request_context(user_id=x_user_id)
    return await service.social.toggle_like(x_user_id, body.book_key)


@app.get("/social/counts", response_model=Dict[str, SocialCounterState])
async def social_counts(
    keys: List[str] = Query(...),
    x_user_id: Optional[str] = Header(None),
    service: CatalogService = Depends(get_service),
):
    return await service.social.counts(keys, x_user_id)


# ---------------------------------------------------------------------------
# Prometheus middleware
# ---------------------------------------------------------------------------

@app.middleware("http")
async def _prometheus_middleware(request: Request, call_next):  # noqa: D401
    """Track per-request latency and count using Prometheus helpers."""

    start_time = time.perf_counter()
    response = await call_next(request)

    duration = time.perf_counter() - start_time
    endpoint = request.url.path

    REQUEST_LATENCY.labels(service=SERVICE_NAME, endpoint=endpoint).observe(duration)
    REQUEST_COUNTER.labels(
        service=SERVICE_NAME,
        method=request.method,
        endpoint=endpoint,
        status_code=response.status_code,
    ).inc()

    return response


# ---------------------------------------------------------------------------
# Script entry-point
# ---------------------------------------------------------------------------
if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "catalog_api.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=S.catalog_api_port,
        reload=False,
    )
