"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
api_auth_rejections_total = Counter(
    "api_auth_rejections_total",
    "Merchant API requests rejected by HMAC authentication",
    ["service", "code"],
)
antifraud_rejections_total = Counter(
    "antifraud_rejections_total",
    "Payment attempts rejected by antifraud rules",
    ["service", "rule"],
)
antifraud_ip_blocks_total = Counter(
    "antifraud_ip_blocks_total",
    "Adaptive IP blocks activated",
    ["service"],
)
provider_webhooks_total = Counter(
    "provider_webhooks_total",
    "Inbound PSP webhooks by validation outcome",
    ["service", "provider", "outcome"],
)
payment_transitions_total = Counter(
    "payment_transitions_total",
    "PSP-driven payment status transitions applied",
    ["service", "provider", "to_status"],
)
webhook_delivery_attempts_total = Counter(
    "webhook_delivery_attempts_total",
    "Outbound merchant webhook delivery attempts",
    ["service", "outcome"],
)
webhook_delivery_latency_seconds = Histogram(
    "webhook_delivery_latency_seconds",
    "Outbound merchant webhook POST latency seconds",
    ["service"],
)
webhook_deliveries_pending = Gauge(
    "webhook_deliveries_pending",
    "Deliveries waiting for a retry (status FAILED)",
    ["service"],
)
reconciliation_mismatches_total = Counter(
    "reconciliation_mismatches_total",
    "Reconciliation mismatches detected",
    ["service", "provider", "mismatch_type"],
)
reconciliation_errors_total = Counter(
    "reconciliation_errors_total",
    "Provider report fetch failures during reconciliation",
    ["service", "provider"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
