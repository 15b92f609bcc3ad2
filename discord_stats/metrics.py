"""
Prometheus metrics, exposed on GET /metrics.

Three families:
- the stats API: requests by route and status, latency by route
- the gateway: events by kind and how the router handled them
- backfill: scanned messages by insert outcome

All collectors live in the default prometheus-client registry for the
lifetime of the process.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Stats API
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Stats API requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Stats API request latency in seconds",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)


# =============================================================================
# Gateway & Backfill
# =============================================================================

# kind: ready, message, message_update, message_delete, bulk_message_delete
# result: stored, duplicate, ignored, error
gateway_events_total = Counter(
    "gateway_events_total",
    "Gateway events seen by the event router",
    labelnames=["kind", "result"]
)

# result: created, duplicate, error
scan_messages_total = Counter(
    "scan_messages_total",
    "Messages written by history scans",
    labelnames=["result"]
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    # Query strings would make the path label unbounded
    route = path.partition("?")[0]
    http_requests_total.labels(method=method, path=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=route).observe(latency_seconds)


def record_gateway_event(kind: str, result: str) -> None:
    gateway_events_total.labels(kind=kind, result=result).inc()


def record_scan_message(result: str) -> None:
    scan_messages_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Current values in the Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
