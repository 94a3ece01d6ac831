"""
Prometheus metrics
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, Info

logger = logging.getLogger(__name__)

APP_INFO = Info("hack_timeline_app", "hack_timeline app metadata")

HTTP_REQUESTS = Counter(
    "hack_timeline_http_requests_total", "HTTP requests count",
    ["method", "path", "status"],
)
HTTP_REQUEST_LATENCY = Histogram(
    "hack_timeline_http_request_duration_seconds", "HTTP request latency",
    ["method", "path"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

FETCH_COUNT = Counter(
    "hack_timeline_fetch_total", "Channel fetch outcomes",
    ["kind", "channel", "status"],
)
FETCH_POSTS = Counter(
    "hack_timeline_fetch_posts_total", "Posts returned by channel fetches",
    ["kind", "channel"],
)

EXTRACT_COUNT = Counter(
    "hack_timeline_extract_total", "Per-post extract+store outcomes",
    ["kind", "status"],
)
STORED_RECORDS = Counter(
    "hack_timeline_stored_records_total", "Records stored",
    ["kind"],
)

CYCLE_COUNT = Counter(
    "hack_timeline_cycle_total", "Scrape cycles",
    ["kind", "status"],
)
CYCLE_LATENCY = Histogram(
    "hack_timeline_cycle_duration_seconds", "Scrape cycle latency",
    ["kind"],
    buckets=[0.5, 1, 5, 10, 30, 60, 120, 180, 300],
)

RETRY_QUEUE_SIZE = Gauge(
    "hack_timeline_retry_queue_size", "Posts waiting in the retry queue",
    ["kind", "channel"],
)
DEAD_LETTERS = Counter(
    "hack_timeline_dead_letter_total", "Posts that exhausted their retry attempts",
    ["kind", "channel"],
)

CACHE_LOOKUPS = Counter(
    "hack_timeline_tag_cache_lookups_total", "Tag cache lookups",
    ["result"],
)


def set_app_info(name: str, version: str, env: str):
    APP_INFO.info({"name": name, "version": version, "env": env})


def observe_http_request(method: str, path: str, status: int, elapsed: float):
    HTTP_REQUESTS.labels(method=method, path=path, status=str(status)).inc()
    HTTP_REQUEST_LATENCY.labels(method=method, path=path).observe(max(0.0, elapsed))


def record_fetch(kind: str, channel: str, status: str, post_count: int = 0):
    FETCH_COUNT.labels(kind=kind, channel=channel, status=status).inc()
    if post_count > 0:
        FETCH_POSTS.labels(kind=kind, channel=channel).inc(int(post_count))


def record_extract(kind: str, status: str):
    EXTRACT_COUNT.labels(kind=kind, status=status).inc()
    if status == "stored":
        STORED_RECORDS.labels(kind=kind).inc()


def record_cycle(kind: str, status: str, latency: float = 0.0):
    CYCLE_COUNT.labels(kind=kind, status=status).inc()
    if latency > 0:
        CYCLE_LATENCY.labels(kind=kind).observe(latency)


def set_retry_queue_size(kind: str, channel: str, size: int):
    RETRY_QUEUE_SIZE.labels(kind=kind, channel=channel).set(max(0, int(size)))


def record_dead_letter(kind: str, channel: str):
    DEAD_LETTERS.labels(kind=kind, channel=channel).inc()


def record_cache_lookup(result: str):
    CACHE_LOOKUPS.labels(result=result).inc()
