"""Prometheus metric definitions shared by the delivery and linking services."""

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
telegram_api_calls_total = Counter(
    "telegram_api_calls_total",
    "Telegram Bot API calls by method and normalized outcome",
    ["method", "outcome"],
)
telegram_api_latency_seconds = Histogram(
    "telegram_api_latency_seconds",
    "Telegram Bot API call latency seconds",
    ["method"],
)
deliveries_created_total = Counter(
    "deliveries_created_total",
    "Delivery rows inserted (duplicates excluded)",
    ["source_type"],
)
deliveries_deduplicated_total = Counter(
    "deliveries_deduplicated_total",
    "Delivery rows skipped because (idempotency_key, parent_id) already existed",
    ["source_type"],
)
delivery_attempts_total = Counter(
    "delivery_attempts_total",
    "Claimed delivery attempts by caller and outcome",
    ["caller", "outcome"],
)
delivery_claim_conflicts_total = Counter(
    "delivery_claim_conflicts_total",
    "Claims lost to a concurrent caller",
    ["caller"],
)
sweep_runs_total = Counter("sweep_runs_total", "Retry sweep invocations", ["result"])
deliveries_backlog_total = Gauge(
    "deliveries_backlog_total",
    "Current count of deliveries not yet sent, by status",
    ["status"],
)
deliveries_oldest_due_age_seconds = Gauge(
    "deliveries_oldest_due_age_seconds",
    "Age in seconds of the oldest retryable delivery that is due",
)
webhook_updates_total = Counter(
    "webhook_updates_total",
    "Inbound Telegram updates by kind and terminal status",
    ["kind", "status"],
)
duplicate_updates_skipped_total = Counter(
    "duplicate_updates_skipped_total",
    "Replayed Telegram updates skipped by update_id",
)
parents_linked_total = Counter("parents_linked_total", "Parent chats linked", ["method"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
