"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Ingestion outcome counter (result)
- Delivery attempt counter (outcome) and bridge latency histogram
- Dead-letter counter and breaker state gauge

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

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, duplicate, invalid_signature, validation_error, store_error
ingest_requests_total = Counter(
    "ingest_requests_total",
    "Total inbound ingestion outcomes",
    labelnames=["result"]
)

# outcome: success, retry, fail, breaker_open
delivery_attempts_total = Counter(
    "delivery_attempts_total",
    "Outbound delivery attempts by outcome",
    labelnames=["outcome"]
)

dead_letters_total = Counter(
    "dead_letters_total",
    "Messages that reached permanently_failed with a dead-letter event"
)

bridge_latency_seconds = Histogram(
    "bridge_latency_seconds",
    "Gateway call latency in seconds"
)

# 0 = closed, 1 = half_open, 2 = open
breaker_state = Gauge(
    "breaker_state",
    "Circuit breaker state (0 closed, 1 half_open, 2 open)",
    labelnames=["service"]
)

_BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, e.g. /send/status/{message_id}
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_ingest_outcome(result: str) -> None:
    """
    Record an ingestion outcome.

    Args:
        result: created, duplicate, invalid_signature, validation_error or store_error
    """
    ingest_requests_total.labels(result=result).inc()


def record_delivery_attempt(outcome: str) -> None:
    delivery_attempts_total.labels(outcome=outcome).inc()


def record_dead_letter() -> None:
    dead_letters_total.inc()


def observe_bridge_latency(seconds: float) -> None:
    bridge_latency_seconds.observe(seconds)


def set_breaker_state(service: str, state: str) -> None:
    breaker_state.labels(service=service).set(_BREAKER_STATE_VALUES.get(state, 0))


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
