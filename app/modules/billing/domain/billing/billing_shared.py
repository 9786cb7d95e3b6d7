"""Shared runtime primitives for the billing domain modules."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from app.shared.core.exceptions import CollaboratorCallFailed
from app.shared.core.notifications import NotificationCollaborator, NotificationKind
from app.shared.core.ops_metrics import (
    COLLABORATOR_FAILURES_TOTAL,
    SUBSCRIPTION_TRANSITIONS_TOTAL,
)
from app.shared.core.provisioning import ProvisioningCollaborator

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning("billing_invalid_unix_timestamp", value=str(value)[:32])
        return None


def record_transition(tenant_kind: str, from_status: str, to_status: str) -> None:
    if from_status == to_status:
        return
    SUBSCRIPTION_TRANSITIONS_TOTAL.labels(
        tenant_kind=tenant_kind, from_status=from_status, to_status=to_status
    ).inc()


async def enable_resource_best_effort(
    provisioning: ProvisioningCollaborator, resource_id: Optional[str], **context: Any
) -> bool:
    if not resource_id:
        logger.info("provisioning_skipped_no_resource", action="enable", **context)
        return False
    try:
        await provisioning.enable_resource(resource_id)
    except CollaboratorCallFailed as exc:
        COLLABORATOR_FAILURES_TOTAL.labels(
            collaborator="provisioning", operation="enable"
        ).inc()
        logger.error(
            "provisioning_enable_failed",
            resource_id=resource_id,
            error=exc.message,
            **context,
        )
        return False
    return True


async def disable_resource_best_effort(
    provisioning: ProvisioningCollaborator, resource_id: Optional[str], **context: Any
) -> bool:
    if not resource_id:
        logger.info("provisioning_skipped_no_resource", action="disable", **context)
        return False
    try:
        await provisioning.disable_resource(resource_id)
    except CollaboratorCallFailed as exc:
        COLLABORATOR_FAILURES_TOTAL.labels(
            collaborator="provisioning", operation="disable"
        ).inc()
        logger.error(
            "provisioning_disable_failed",
            resource_id=resource_id,
            error=exc.message,
            **context,
        )
        return False
    return True


async def notify_best_effort(
    notifier: NotificationCollaborator,
    recipient: Optional[str],
    kind: NotificationKind,
    data: dict[str, Any],
) -> bool:
    if not recipient:
        logger.info("notification_skipped_no_recipient", kind=kind.value)
        return False
    try:
        await notifier.notify(recipient, kind, data)
    except CollaboratorCallFailed as exc:
        COLLABORATOR_FAILURES_TOTAL.labels(
            collaborator="notification", operation=kind.value
        ).inc()
        logger.error("notification_failed", kind=kind.value, error=exc.message)
        return False
    return True
