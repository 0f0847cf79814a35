"""
Prometheus metrics for the chat relay.

HTTP traffic is labelled by route template (``/conversations/{contact_id}/messages``),
never by concrete path, so contact ids do not turn into label values. The
chat core reports ingestion, status and fanout outcomes through the
``record_*`` helpers; nothing outside this module touches the collectors'
labels directly.

Collectors live in the default prometheus-client registry.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


# =============================================================================
# HTTP
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests served, by route template",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds, by route template",
    labelnames=["method", "path"]
)

# result: processed | invalid_signature | validation_error | error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Provider webhook deliveries, by outcome",
    labelnames=["result"]
)


# =============================================================================
# Chat Core
# =============================================================================

# direction: inbound | outbound; result: created | duplicate
messages_ingested_total = Counter(
    "messages_ingested_total",
    "Messages offered to the ingestor, by outcome",
    labelnames=["direction", "result"]
)

# result: changed | noop | not_found
status_updates_total = Counter(
    "status_updates_total",
    "Status transitions requested, by outcome",
    labelnames=["result"]
)

# result: queued | dropped
fanout_events_total = Counter(
    "fanout_events_total",
    "Frames offered to live viewers, by outcome",
    labelnames=["result"]
)

connected_viewers = Gauge(
    "connected_viewers",
    "Viewers with a live connection"
)


# =============================================================================
# Recording
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Count one served request and observe its latency.

    Args:
        method: HTTP method
        path: Route template the request matched (or the raw path when unmatched)
        status: Response status code
        latency_seconds: Time spent handling the request
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_ingestion(direction: str, duplicate: bool) -> None:
    messages_ingested_total.labels(
        direction=direction,
        result="duplicate" if duplicate else "created"
    ).inc()


def record_status_update(result: str) -> None:
    status_updates_total.labels(result=result).inc()


def record_fanout(result: str, count: int = 1) -> None:
    if count:
        fanout_events_total.labels(result=result).inc(count)


def get_metrics() -> bytes:
    """Current values of every collector in the text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
