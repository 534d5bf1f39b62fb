import time
from collections.abc import Awaitable, Callable
from functools import wraps

from prometheus_client import Counter, Gauge, Histogram


WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Total webhook deliveries by outcome",
    ["event_type", "status"],
)

HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    ["method", "path"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

LEDGER_ENTRIES_CREATED = Counter(
    "ledger_entries_created_total",
    "Ledger entries created from successful charges",
    ["currency"],
)

LEDGER_CAS_CONFLICTS = Counter(
    "ledger_cas_conflicts_total",
    "Ledger transitions that lost a compare-and-swap race",
    ["from_state", "to_state"],
)

ESCROW_SWEEPS_TOTAL = Counter(
    "escrow_sweeps_total",
    "Escrow sweeps by outcome",
    ["outcome"],
)

ESCROW_SWEEP_DURATION = Histogram(
    "escrow_sweep_duration_seconds",
    "Escrow sweep duration",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

ENTRIES_CLAIMED_TOTAL = Counter(
    "escrow_entries_claimed_total",
    "Ledger entries claimed for payout by sweeps",
)

STALE_CLAIMS_RECOVERED = Counter(
    "escrow_stale_claims_recovered_total",
    "Stale claims reset or re-queued by recovery",
    ["kind"],
)

PAYOUT_ATTEMPTS_TOTAL = Counter(
    "payout_attempts_total",
    "Transfer attempts against the payment gateway",
    ["outcome"],
)

PAYOUT_BATCHES_TOTAL = Counter(
    "payout_batches_total",
    "Payout batches by lifecycle status",
    ["status"],
)

PAYOUT_QUEUE_DEPTH = Gauge(
    "payout_queue_depth",
    "Payout batches waiting for a worker",
)

NOTIFICATIONS_TOTAL = Counter(
    "seller_notifications_total",
    "Seller notifications by outcome",
    ["type", "outcome"],
)

NOTIFICATIONS_REAPED = Counter(
    "seller_notifications_reaped_total",
    "Expired seller notifications deleted by the reaper",
)

OPS_ALERTS_TOTAL = Counter(
    "ops_alerts_total",
    "Operator alerts raised",
    ["kind"],
)


def track_duration[**P, R](
    histogram: Histogram,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                histogram.observe(time.perf_counter() - start)

        return wrapper

    return decorator
