"""Billing Services."""

from app.modules.billing.domain.billing.agency_state_machine import (
    AgencyBillingStateMachine,
)
from app.modules.billing.domain.billing.client_state_machine import (
    ClientBillingStateMachine,
)
from app.modules.billing.domain.billing.commission_ledger import (
    CommissionLedger,
    PayoutResult,
)
from app.modules.billing.domain.billing.trial_reconciliation import (
    ReconciliationSummary,
    TrialReconciliationJob,
)
from app.modules.billing.domain.billing.webhook_dispatcher import WebhookDispatcher


__all__ = [
    "AgencyBillingStateMachine",
    "ClientBillingStateMachine",
    "CommissionLedger",
    "PayoutResult",
    "ReconciliationSummary",
    "TrialReconciliationJob",
    "WebhookDispatcher",
]
