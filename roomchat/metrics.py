"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Fan-out event counter (event)
- Active live session gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# path is the route template (/rooms/{room_id}) so ids don't explode cardinality
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

# event: new_message, message_deleted, new_reply, deleted_reply
chat_events_published_total = Counter(
    "chat_events_published_total",
    "Total room events published to live sessions",
    labelnames=["event"]
)

live_sessions_active = Gauge(
    "live_sessions_active",
    "Number of connected live room sessions"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template or request path
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


def record_chat_event(event: str) -> None:
    """Record one published fan-out event."""
    chat_events_published_total.labels(event=event).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
