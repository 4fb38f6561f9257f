"""Prometheus metric definitions for the payment protocol layer."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


gateway_requests_total = Counter(
    "gateway_requests_total",
    "Signed gateway calls by operation and outcome",
    ["operation", "outcome"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Gateway round-trip latency seconds",
    ["operation"],
)
signature_failures_total = Counter(
    "signature_failures_total",
    "Gateway messages that failed signature verification",
    ["operation"],
)
order_transitions_total = Counter(
    "order_transitions_total",
    "Applied order status transitions",
    ["from_status", "to_status"],
)
stale_notifications_total = Counter(
    "stale_notifications_total",
    "Status reports ignored because they would move an order backwards",
    ["source"],
)
duplicate_notifications_total = Counter(
    "duplicate_notifications_total",
    "Status reports that matched the current order status",
    ["source"],
)
inventory_adjustments_total = Counter(
    "inventory_adjustments_total",
    "Inventory adjustment marker outcomes",
    ["outcome"],
)
reconciliation_partial_failures_total = Counter(
    "reconciliation_partial_failures_total",
    "Order status persisted but inventory bookkeeping degraded",
)
status_check_timeouts_total = Counter(
    "status_check_timeouts_total",
    "Status polling loops that hit their attempt bound",
)
checkouts_total = Counter("checkouts_total", "Checkout attempts by outcome", ["outcome"])
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
