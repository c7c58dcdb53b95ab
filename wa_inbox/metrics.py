"""
Prometheus metrics for the inbox service.

This module provides:
- HTTP request counter (method, path, status)
- Webhook outcome counter (result)
- Gateway call counter (operation, outcome)
- Background persistence counter (result)
- Request latency histogram (method, path)

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

# result: no_user, ignored, no_data, duplicate, processing, unauthorized, malformed, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# outcome: ok, http_error, request_error
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total calls made to the messaging gateway",
    labelnames=["operation", "outcome"]
)

# result: created, duplicate, error
message_persist_total = Counter(
    "message_persist_total",
    "Outcomes of background message inserts",
    labelnames=["result"]
)

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
    webhook_requests_total.labels(result=result).inc()


def record_gateway_call(operation: str, outcome: str) -> None:
    gateway_requests_total.labels(operation=operation, outcome=outcome).inc()


def record_persist_outcome(result: str) -> None:
    message_persist_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
