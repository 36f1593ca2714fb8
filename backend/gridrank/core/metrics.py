from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests.",
    ["method", "path", "status"],
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently being served.",
    ["method"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds.",
    ["method", "path"],
)

provider_calls_total = Counter(
    "provider_calls_total",
    "Ranking provider calls dispatched through the scheduler.",
    ["endpoint_class", "outcome"],
)

provider_retries_total = Counter(
    "provider_retries_total",
    "Ranking provider retries after a retryable failure.",
    ["endpoint_class", "reason_code"],
)

limiter_wait_seconds = Histogram(
    "limiter_wait_seconds",
    "Time spent waiting for endpoint-class capacity.",
    ["endpoint_class"],
)

cache_requests_total = Counter(
    "cache_requests_total",
    "Response cache lookups by result.",
    ["result"],
)

grid_scan_duration_seconds = Histogram(
    "grid_scan_duration_seconds",
    "Wall-clock duration of grid scans.",
    ["status"],
    buckets=(5, 15, 30, 60, 120, 300, 600, 1200, 1800, 3600),
)

grid_scans_total = Counter(
    "grid_scans_total",
    "Grid scans by terminal status.",
    ["status"],
)

celery_task_duration_seconds = Histogram(
    "celery_task_duration_seconds",
    "Celery task runtime in seconds.",
    ["task_name", "queue_name"],
)

tasks_in_progress = Gauge(
    "tasks_in_progress",
    "Celery tasks currently executing.",
    ["queue_name"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
