"""
Prometheus metrics for the messenger relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Verification outcome counter (result)
- Relay delivery counter (delivery)
- Open WebSocket connection gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: issued, verified, rejected
verification_outcomes_total = Counter(
    "verification_outcomes_total",
    "Verification code outcomes",
    labelnames=["result"]
)

# delivery: delivered, offline, failed
relay_messages_total = Counter(
    "relay_messages_total",
    "Messages relayed, by live delivery outcome",
    labelnames=["delivery"]
)

websocket_connections = Gauge(
    "websocket_connections",
    "Currently open WebSocket connections"
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
    # Normalize path to avoid high-cardinality labels
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


def record_verification_outcome(result: str) -> None:
    verification_outcomes_total.labels(result=result).inc()


def record_delivery(delivery: str) -> None:
    """
    Record the live-delivery outcome of a relayed message.

    Args:
        delivery: One of:
            - "delivered": pushed to the recipient's connection
            - "offline": recipient has no session or no open connection
            - "failed": the push raised or timed out
    """
    relay_messages_total.labels(delivery=delivery).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
