"""
Prometheus metrics for the BookXchange API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Sent message counter
- Live delivery outcome counter (result)
- Open WebSocket connection gauge

Metrics are stored in-memory using prometheus-client.
"""

import re

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds, default buckets
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

messages_sent_total = Counter(
    "messages_sent_total",
    "Total direct messages persisted"
)

# result: delivered, offline, failed
live_deliveries_total = Counter(
    "live_deliveries_total",
    "Live delivery attempts for new messages",
    labelnames=["result"]
)

websocket_connections = Gauge(
    "websocket_connections",
    "Identified WebSocket connections currently registered"
)


# =============================================================================
# Helper Functions
# =============================================================================

_NUMERIC_SEGMENT = re.compile(r"/\d+(?=/|$)")


def normalize_path(path: str) -> str:
    """
    Collapse query strings and numeric path segments to keep label
    cardinality bounded (e.g. /listings/7?x=1 -> /listings/{id}).
    """
    return _NUMERIC_SEGMENT.sub("/{id}", path.split("?")[0])


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = normalize_path(path)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_message_sent() -> None:
    messages_sent_total.inc()


def record_live_delivery(result: str) -> None:
    """
    Record a live delivery outcome.

    Args:
        result: one of
            - "delivered": pushed to the receiver's socket
            - "offline": receiver had no registered socket
            - "failed": the push raised and the socket was dropped
    """
    live_deliveries_total.labels(result=result).inc()


def set_websocket_connections(count: int) -> None:
    websocket_connections.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.
    """
    return CONTENT_TYPE_LATEST
