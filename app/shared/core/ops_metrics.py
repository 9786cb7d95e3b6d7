"""
Operational metrics for the billing core.

Prometheus counters for webhook intake, subscription transitions, the
referral ledger, payouts and the trial reconciliation sweep.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar, cast

from prometheus_client import Counter, Histogram
import time

# --- API ---
API_ERRORS_TOTAL = Counter(
    "voiceconnect_billing_api_errors_total",
    "Error responses returned by the API",
    ["path", "method", "status_code"],
)

# --- Webhook intake ---
WEBHOOK_EVENTS_TOTAL = Counter(
    "voiceconnect_billing_webhook_events_total",
    "Total verified webhook events by source and routing outcome",
    ["source", "event_type", "outcome"],  # outcome: handled, ignored, failed
)

WEBHOOK_SIGNATURE_FAILURES = Counter(
    "voiceconnect_billing_webhook_signature_failures_total",
    "Webhook deliveries rejected for a missing or invalid signature",
    ["source"],
)

WEBHOOK_PROCESSING_DURATION = Histogram(
    "voiceconnect_billing_webhook_duration_seconds",
    "Time spent applying a verified webhook event",
    ["source"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)

# --- Subscription state ---
SUBSCRIPTION_TRANSITIONS_TOTAL = Counter(
    "voiceconnect_billing_subscription_transitions_total",
    "Subscription status changes applied",
    ["tenant_kind", "from_status", "to_status"],  # tenant_kind: agency, client
)

# --- Referral ledger ---
COMMISSIONS_RECORDED_TOTAL = Counter(
    "voiceconnect_billing_commissions_recorded_total",
    "Referral commission entries written",
)

COMMISSION_DUPLICATES_TOTAL = Counter(
    "voiceconnect_billing_commission_duplicates_total",
    "Commission attempts rejected as already recorded for the invoice",
)

COMMISSION_CENTS_TOTAL = Counter(
    "voiceconnect_billing_commission_cents_total",
    "Sum of referral commission accrued, in cents",
)

PAYOUTS_TOTAL = Counter(
    "voiceconnect_billing_payouts_total",
    "Referral payout attempts by outcome",
    ["outcome"],  # outcome: transferred, rejected, failed
)

# --- Trial reconciliation ---
TRIALS_EXPIRED_TOTAL = Counter(
    "voiceconnect_billing_trials_expired_total",
    "Client trials expired by the reconciliation sweep",
)

TRIAL_SWEEP_DURATION = Histogram(
    "voiceconnect_billing_trial_sweep_duration_seconds",
    "Duration of a trial reconciliation run",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120),
)

# --- Outbound collaborators ---
COLLABORATOR_FAILURES_TOTAL = Counter(
    "voiceconnect_billing_collaborator_failures_total",
    "Best-effort provisioning and notification calls that failed",
    ["collaborator", "operation"],
)

F = TypeVar("F", bound=Callable[..., Any])


def time_operation(histogram: Histogram, **labels: str) -> Callable[[F], F]:
    """Decorator that observes an async operation's duration on a histogram."""

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                target = histogram.labels(**labels) if labels else histogram
                target.observe(time.perf_counter() - start)

        return cast(F, wrapper)

    return decorator
