"""
Prometheus metrics for the LINE CRM service.

This module provides:
- HTTP request counter (method, path, status)
- Webhook request counter (result)
- Webhook event counter (kind, outcome)
- Profile enrichment counter (outcome)
- Request latency histogram (method, path)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Webhook request outcome counter
# result: processed, invalid_signature, validation_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook request outcomes",
    labelnames=["result"]
)

# Per-event outcome counter
# outcome: applied, duplicate, skipped, failed
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook events by kind and ingestion outcome",
    labelnames=["kind", "outcome"]
)

# outcome: updated, not_found, timeout, error
profile_enrichment_total = Counter(
    "profile_enrichment_total",
    "LINE profile enrichment attempts by outcome",
    labelnames=["outcome"]
)

# Request latency histogram in seconds (default buckets)
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


def record_webhook_outcome(result: str) -> None:
    """
    Record a webhook request outcome.

    Args:
        result: Processing result - one of:
            - "processed": batch accepted and ingested
            - "invalid_signature": X-Line-Signature validation failed
            - "validation_error": body is not a LINE event batch
    """
    webhook_requests_total.labels(result=result).inc()


def record_event_outcome(kind: str, outcome: str) -> None:
    webhook_events_total.labels(kind=kind, outcome=outcome).inc()


def record_enrichment(outcome: str) -> None:
    profile_enrichment_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
