"""Operator-surface helpers for billing routes: shared-secret guards and job runners."""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.modules.billing.domain.billing.trial_reconciliation import (
    ReconciliationSummary,
    TrialReconciliationJob,
)
from app.shared.core.config import get_settings
from app.shared.core.notifications import NotificationCollaborator
from app.shared.core.provisioning import ProvisioningCollaborator

logger = structlog.get_logger()

MIN_OPERATOR_SECRET_LENGTH = 32


def _check_operator_secret(
    provided: Optional[str], expected: Optional[str], *, name: str
) -> None:
    settings = get_settings()
    min_length = 1 if settings.TESTING else MIN_OPERATOR_SECRET_LENGTH
    if not expected or len(expected) < min_length:
        raise HTTPException(
            status_code=503,
            detail=f"{name} is not configured securely. Set a 32+ character secret.",
        )
    if not provided or not secrets.compare_digest(provided, expected):
        logger.warning("operator_secret_rejected", secret_name=name)
        raise HTTPException(status_code=403, detail="Invalid secret")


async def require_admin_secret(
    x_admin_secret: Optional[str] = Header(default=None),
) -> None:
    """Guards administrative money-moving actions (referral payouts)."""
    _check_operator_secret(
        x_admin_secret, get_settings().ADMIN_API_SECRET, name="ADMIN_API_SECRET"
    )


async def require_cron_secret(
    x_cron_secret: Optional[str] = Header(default=None),
) -> None:
    """Guards scheduler-invoked endpoints."""
    _check_operator_secret(x_cron_secret, get_settings().CRON_SECRET, name="CRON_SECRET")


async def run_trial_reconciliation(
    db: AsyncSession,
    provisioning: ProvisioningCollaborator,
    notifier: NotificationCollaborator,
) -> ReconciliationSummary:
    job = TrialReconciliationJob(db, provisioning, notifier)
    summary = await job.run()
    logger.info(
        "trial_reconciliation_triggered",
        processed_count=summary.processed_count,
        candidates=summary.candidates,
    )
    return summary
