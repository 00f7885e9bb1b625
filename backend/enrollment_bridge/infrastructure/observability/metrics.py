from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
WEBHOOKS_RECEIVED_TOTAL = Counter(
    "webhooks_received_total",
    "Order-paid webhooks by idempotency decision",
    labelnames=("decision",),
)
MOODLE_API_CALLS_TOTAL = Counter(
    "moodle_api_calls_total",
    "Calls issued to the Moodle web service",
    labelnames=("function", "status"),
)
MOODLE_API_LATENCY_SECONDS = Histogram(
    "moodle_api_latency_seconds",
    "Moodle web service latency in seconds",
    labelnames=("function",),
)
ENROLLMENTS_TOTAL = Counter(
    "enrollments_total",
    "Course enrollment outcomes",
    labelnames=("outcome",),
)
COMPENSATIONS_TOTAL = Counter(
    "compensations_total",
    "Compensation actions taken for partially failed orders",
    labelnames=("action",),
)
FAILED_ENROLLMENT_RETRIES_TOTAL = Counter(
    "failed_enrollment_retries_total",
    "Failed enrollment sweep retries",
    labelnames=("outcome",),
)


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def record_moodle_call(function: str, status: str, duration_seconds: float) -> None:
    MOODLE_API_CALLS_TOTAL.labels(function=function, status=status).inc()
    MOODLE_API_LATENCY_SECONDS.labels(function=function).observe(duration_seconds)


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
