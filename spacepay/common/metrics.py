"""Prometheus metric definitions for the payment lifecycle."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter("payment_requests_total", "Total payment initiation requests", ["service"])
payment_success_total = Counter("payment_success_total", "Total payments reaching COMPLETED", ["service", "source"])
payment_failure_total = Counter("payment_failure_total", "Total payments reaching FAILED", ["service", "source"])
payment_latency_seconds = Histogram("payment_latency_seconds", "Initiation request latency seconds", ["service"])
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment end-to-end duration seconds from PENDING to terminal",
    ["service", "terminal_state"],
)
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Inbound gateway callbacks by handling outcome",
    ["service", "outcome"],
)
duplicate_signals_total = Counter(
    "duplicate_signals_total",
    "Signals matching an already-recorded terminal outcome",
    ["service", "source"],
)
terminal_conflicts_total = Counter(
    "terminal_conflicts_total",
    "Signals contradicting an already-recorded terminal outcome",
    ["service", "source"],
)
reconciliations_total = Counter(
    "reconciliations_total",
    "Active status queries by outcome",
    ["service", "outcome"],
)
gateway_request_seconds = Histogram(
    "gateway_request_seconds",
    "Outbound provider call duration seconds",
    ["service", "operation"],
)
gateway_errors_total = Counter(
    "gateway_errors_total",
    "Outbound provider call failures",
    ["service", "operation"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
