"""
Prometheus metrics for the chat pipeline.

This module provides:
- HTTP request counter and latency histogram
- Event Log publish and drop counters
- Batch flush and persistence counters
- Fan-out publish counter
- Socket connection gauge and per-event counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: ok, error
chat_events_published_total = Counter(
    "chat_events_published_total",
    "Chat events published to the event log",
    labelnames=["result"]
)

# reason: parse_error
chat_events_dropped_total = Counter(
    "chat_events_dropped_total",
    "Chat events dropped by the batch consumer",
    labelnames=["reason"]
)

# trigger: size, timer, drain, manual
chat_batch_flushes_total = Counter(
    "chat_batch_flushes_total",
    "Batch flushes performed by the consumer",
    labelnames=["trigger"]
)

# result: inserted, duplicate, failed
chat_messages_persisted_total = Counter(
    "chat_messages_persisted_total",
    "Outcome of each message write during batch flush",
    labelnames=["result"]
)

# result: ok, error, disabled
fanout_publish_total = Counter(
    "fanout_publish_total",
    "Real-time fan-out publish attempts",
    labelnames=["channel", "result"]
)

socket_connections = Gauge(
    "socket_connections",
    "Currently open socket connections"
)

# result: ok, error
socket_events_total = Counter(
    "socket_events_total",
    "Inbound socket events by outcome",
    labelnames=["event", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_publish(result: str) -> None:
    chat_events_published_total.labels(result=result).inc()


def record_dropped_event(reason: str) -> None:
    chat_events_dropped_total.labels(reason=reason).inc()


def record_flush(trigger: str, inserted: int, duplicates: int, failed: int) -> None:
    """Record one batch flush and the per-message outcome counts."""
    chat_batch_flushes_total.labels(trigger=trigger).inc()
    if inserted:
        chat_messages_persisted_total.labels(result="inserted").inc(inserted)
    if duplicates:
        chat_messages_persisted_total.labels(result="duplicate").inc(duplicates)
    if failed:
        chat_messages_persisted_total.labels(result="failed").inc(failed)


def record_fanout(channel: str, result: str) -> None:
    fanout_publish_total.labels(channel=channel, result=result).inc()


def record_socket_event(event: str, ok: bool) -> None:
    socket_events_total.labels(event=event, result="ok" if ok else "error").inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
