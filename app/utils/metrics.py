"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
ledger_operations_total = Counter(
    "ledger_operations_total",
    "Total ledger operations",
    ["operation"],  # credit, debit, refund, duplicate, expire
)

balance_rejected_total = Counter(
    "balance_rejected_total",
    "Total debits rejected for insufficient balance",
)

payment_events_total = Counter(
    "payment_events_total",
    "Gateway payment events by outcome",
    ["source", "outcome"],  # source: webhook / poll; outcome: credited, canceled, duplicate, unknown, ...
)

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["method", "status"],
)

generations_total = Counter(
    "generations_total",
    "Generations by final status",
    ["status"],
)

ledger_drift_users = Gauge(
    "ledger_drift_users",
    "Users whose balance differs from the sum of succeeded transactions",
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway request duration",
    ["method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)

generation_duration_seconds = Histogram(
    "generation_duration_seconds",
    "Image provider call duration",
    buckets=[1, 5, 10, 30, 60, 120, 300],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
