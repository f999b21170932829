"""
Prometheus metrics for the conversation router.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook outcome counter (result)
- Inbound event counter (result)
- Outbound message counter (kind, result)
- State transition counter (from_state, to_state)

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

# result: accepted, storage_error, invalid_signature, invalid_payload
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

# result: processed, skipped, storage_error, delivery_error
inbound_events_total = Counter(
    "inbound_events_total",
    "Inbound events by processing outcome",
    labelnames=["result"]
)

# kind: template, text; result: sent, failed, rejected
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound messages by kind and outcome",
    labelnames=["kind", "result"]
)

state_transitions_total = Counter(
    "state_transitions_total",
    "Conversation state transitions",
    labelnames=["from_state", "to_state"]
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
    # Keep per-sender routes to a single label value
    if normalized_path.startswith("/conversations/"):
        normalized_path = "/conversations/{sender_id}"

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


def record_inbound_event(result: str, count: int = 1) -> None:
    if count:
        inbound_events_total.labels(result=result).inc(count)


def record_outbound_message(kind: str, result: str) -> None:
    outbound_messages_total.labels(kind=kind, result=result).inc()


def record_transition(from_state: str, to_state: str) -> None:
    state_transitions_total.labels(from_state=from_state, to_state=to_state).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
