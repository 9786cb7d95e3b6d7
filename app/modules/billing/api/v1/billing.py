"""
Billing API Endpoints - Stripe platform and Connect webhooks

Provides:
- POST /billing/webhooks/platform - platform -> agency subscription events
- POST /billing/webhooks/connect - agency Connect account -> client events
- POST /billing/jobs/expire-trials - trial reconciliation sweep (cron secret)
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.modules.billing.api.v1.billing_models import (
    TrialReconciliationResponse,
    WebhookAck,
)
from app.modules.billing.api.v1.billing_ops import (
    require_cron_secret,
    run_trial_reconciliation,
)
from app.modules.billing.domain.billing.webhook_dispatcher import WebhookDispatcher
from app.shared.core.notifications import NotificationCollaborator, get_notifier
from app.shared.core.provisioning import ProvisioningCollaborator, get_provisioning_client
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])


@router.post("/webhooks/platform", response_model=WebhookAck)
async def platform_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningCollaborator = Depends(get_provisioning_client),
    notifier: NotificationCollaborator = Depends(get_notifier),
) -> WebhookAck:
    """
    Handle subscription events for agencies on the platform account.

    The raw body is verified before anything is parsed, so it is read as
    bytes rather than through a pydantic model.
    """
    payload = await request.body()
    dispatcher = WebhookDispatcher(db, provisioning, notifier)
    result = await dispatcher.dispatch_platform(payload, stripe_signature)
    return WebhookAck(**result.as_response())


@router.post("/webhooks/connect", response_model=WebhookAck)
async def connect_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningCollaborator = Depends(get_provisioning_client),
    notifier: NotificationCollaborator = Depends(get_notifier),
) -> WebhookAck:
    """Handle events raised on agencies' connected accounts (client billing)."""
    payload = await request.body()
    dispatcher = WebhookDispatcher(db, provisioning, notifier)
    result = await dispatcher.dispatch_connect(payload, stripe_signature)
    return WebhookAck(**result.as_response())


@router.post(
    "/jobs/expire-trials",
    response_model=TrialReconciliationResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def expire_trials(
    db: AsyncSession = Depends(get_db),
    provisioning: ProvisioningCollaborator = Depends(get_provisioning_client),
    notifier: NotificationCollaborator = Depends(get_notifier),
) -> TrialReconciliationResponse:
    summary = await run_trial_reconciliation(db, provisioning, notifier)
    return TrialReconciliationResponse(**summary.as_dict())
