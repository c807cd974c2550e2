"""
Prometheus metrics for the SMS relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound webhook outcome counter (result)
- Outbound send outcome counter (result)
- Carrier delivery attempt counter (outcome)
- Translation call counter (direction, outcome)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: created, duplicate, invalid_signature, validation_error, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total inbound webhook processing outcomes",
    labelnames=["result"]
)

# result: sent, failed, translation_error, not_found, validation_error, conflict, error
send_requests_total = Counter(
    "send_requests_total",
    "Total outbound send outcomes",
    labelnames=["result"]
)

# outcome: success, failure
delivery_attempts_total = Counter(
    "delivery_attempts_total",
    "Carrier delivery attempts",
    labelnames=["outcome"]
)

# direction: to_english, to_target; outcome: translated, skipped, error
translation_requests_total = Counter(
    "translation_requests_total",
    "Translation gateway calls",
    labelnames=["direction", "outcome"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
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


def record_webhook_outcome(result: str) -> None:
    """Record an inbound webhook processing outcome."""
    webhook_requests_total.labels(result=result).inc()


def record_send_outcome(result: str) -> None:
    """Record an outbound send (or manual retry) outcome."""
    send_requests_total.labels(result=result).inc()


def record_delivery_attempt(success: bool) -> None:
    delivery_attempts_total.labels(outcome="success" if success else "failure").inc()


def record_translation(direction: str, outcome: str) -> None:
    translation_requests_total.labels(direction=direction, outcome=outcome).inc()


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

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
