"""Common Prometheus metrics.

Counters and histograms shared by the API, the hydration pipeline, the
enrichment scheduler and the social synchronizer.
"""
from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Metric definitions (add new ones here)
# ---------------------------------------------------------------------------

REQUEST_COUNTER = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "method", "endpoint", "status_code"],
)

REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "Latency of HTTP requests in seconds",
    ["service", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

SOURCE_LOOKUPS_TOTAL = Counter(
    "source_lookups_total",
    "Bibliographic source lookups",
    ["source", "operation", "status"],
)

HYDRATION_RUNS_TOTAL = Counter(
    "hydration_runs_total",
    "Metadata hydration runs",
    ["outcome"],
)

ENRICHMENT_JOBS_TOTAL = Counter(
    "enrichment_jobs_total",
    "Self-healing enrichment jobs",
    ["status"],
)

CIRCUIT_BREAKER_TRIPS_TOTAL = Counter(
    "enrichment_circuit_breaker_trips_total",
    "Times the enrichment circuit breaker opened",
    ["failure_class"],
)

LIKE_TOGGLES_TOTAL = Counter(
    "like_toggles_total",
    "Like toggle attempts",
    ["outcome"],
)

MESSAGES_PUBLISHED_TOTAL = Counter(
    "kafka_messages_published_total",
    "Kafka messages published",
    ["topic", "status"],
)

MESSAGES_CONSUMED_TOTAL = Counter(
    "kafka_messages_consumed_total",
    "Kafka messages consumed",
    ["topic", "status"],
)

__all__ = [
    "REQUEST_COUNTER",
    "REQUEST_LATENCY",
    "SOURCE_LOOKUPS_TOTAL",
    "HYDRATION_RUNS_TOTAL",
    "ENRICHMENT_JOBS_TOTAL",
    "CIRCUIT_BREAKER_TRIPS_TOTAL",
    "LIKE_TOGGLES_TOTAL",
    "MESSAGES_PUBLISHED_TOTAL",
    "MESSAGES_CONSUMED_TOTAL",
]
