"""
Trial Reconciliation Job

Safety net for missed or delayed webhooks: every client whose trial has
elapsed while still in `trial` is moved to `trial_expired` and suspended.
Each row is claimed with a conditional update, so concurrent sweeps and
webhooks never double-process a client. Side effects only follow a
successful claim.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agency import Agency
from app.models.client import Client
from app.shared.core.notifications import NotificationCollaborator, NotificationKind
from app.shared.core.ops_metrics import (
    TRIAL_SWEEP_DURATION,
    TRIALS_EXPIRED_TOTAL,
    time_operation,
)
from app.shared.core.provisioning import ProvisioningCollaborator

from . import tenant_store
from .billing_shared import (
    disable_resource_best_effort,
    logger,
    notify_best_effort,
    record_transition,
    utcnow,
)

OUTCOME_EXPIRED = "expired"


@dataclass(frozen=True)
class ClientOutcome:
    client_id: str
    outcome: str
    resource_disabled: bool
    notified: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "outcome": self.outcome,
            "resource_disabled": self.resource_disabled,
            "notified": self.notified,
        }


@dataclass
class ReconciliationSummary:
    started_at: datetime
    candidates: int = 0
    outcomes: list[ClientOutcome] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.outcomes)

    def as_dict(self) -> dict[str, Any]:
        return {
            "processed_count": self.processed_count,
            "candidates": self.candidates,
            "started_at": self.started_at.isoformat(),
            "outcomes": [outcome.as_dict() for outcome in self.outcomes],
        }


class TrialReconciliationJob:
    def __init__(
        self,
        db: AsyncSession,
        provisioning: ProvisioningCollaborator,
        notifier: NotificationCollaborator,
    ):
        self.db = db
        self.provisioning = provisioning
        self.notifier = notifier

    @time_operation(TRIAL_SWEEP_DURATION)
    async def run(self, now: Optional[datetime] = None) -> ReconciliationSummary:
        """Expire every elapsed trial. Safe to run repeatedly and concurrently."""
        now = now or utcnow()
        summary = ReconciliationSummary(started_at=now)

        candidate_ids = await tenant_store.list_expired_trial_ids(self.db, now)
        summary.candidates = len(candidate_ids)

        for client_id in candidate_ids:
            claimed = await tenant_store.claim_expired_trial(self.db, client_id, now)
            await self.db.commit()
            if not claimed:
                # A webhook or another sweep moved this row first
                continue

            record_transition("client", "trial", "trial_expired")
            TRIALS_EXPIRED_TOTAL.inc()
            summary.outcomes.append(await self._after_expiry(client_id))

        logger.info(
            "trial_reconciliation_completed",
            candidates=summary.candidates,
            processed_count=summary.processed_count,
        )
        return summary

    async def _after_expiry(self, client_id: Any) -> ClientOutcome:
        result = await self.db.execute(
            select(Client, Agency)
            .join(Agency, Agency.id == Client.agency_id)
            .where(Client.id == client_id)
            .execution_options(populate_existing=True)
        )
        client, agency = result.one()
        context = {"client_id": str(client.id), "agency_id": str(agency.id)}
        logger.info("client_trial_expired", **context)

        disabled = await disable_resource_best_effort(
            self.provisioning, client.resource_id, **context
        )
        notified = await notify_best_effort(
            self.notifier,
            client.email,
            NotificationKind.CLIENT_TRIAL_EXPIRED,
            {"agency_name": agency.name, "business_name": client.business_name},
        )
        return ClientOutcome(
            client_id=str(client.id),
            outcome=OUTCOME_EXPIRED,
            resource_disabled=disabled,
            notified=notified,
        )
