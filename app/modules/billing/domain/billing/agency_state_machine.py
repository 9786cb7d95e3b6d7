"""
Agency Subscription State Machine - platform billing events

States: pending -> trial -> active <-> past_due -> canceled

Every handler writes the target state implied by its event, so redelivery
and reordering converge. Tenant state commits first; the commission ledger
and notifications run after the commit and never undo it.
"""

from __future__ import annotations

import math
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agency import Agency, AgencySubscriptionStatus
from app.shared.core.config import get_settings
from app.shared.core.exceptions import DuplicateLedgerEntryError, UnresolvedTenantError
from app.shared.core.notifications import NotificationCollaborator, NotificationKind

from . import tenant_store
from .billing_shared import (
    as_utc,
    logger,
    notify_best_effort,
    record_transition,
    utcnow,
)
from .commission_ledger import CommissionLedger
from .events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
)

# Stripe subscription.status -> local status. Missing keys leave status alone.
PROCESSOR_STATUS_MAP: dict[str, AgencySubscriptionStatus] = {
    "trialing": AgencySubscriptionStatus.TRIAL,
    "active": AgencySubscriptionStatus.ACTIVE,
    "past_due": AgencySubscriptionStatus.PAST_DUE,
    "unpaid": AgencySubscriptionStatus.PAST_DUE,
    "canceled": AgencySubscriptionStatus.CANCELED,
    "incomplete_expired": AgencySubscriptionStatus.CANCELED,
}

# Agency event log kinds
EVENT_CHECKOUT_COMPLETED = "checkout_completed"
EVENT_PAYMENT_SUCCEEDED = "payment_succeeded"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_SUBSCRIPTION_CANCELED = "subscription_canceled"


class AgencyBillingStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationCollaborator,
        *,
        ledger_factory: Callable[[AsyncSession], CommissionLedger] | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.trial_days = get_settings().AGENCY_TRIAL_DAYS
        self._ledger_factory = ledger_factory or CommissionLedger

    async def _resolve(
        self,
        customer_ref: Optional[str],
        subscription_ref: Optional[str] = None,
        agency_id: Any = None,
    ) -> Agency:
        agency = None
        parsed_id = tenant_store.parse_uuid(agency_id)
        if parsed_id is not None:
            agency = await tenant_store.get_agency(self.db, parsed_id)
        if agency is None:
            agency = await tenant_store.find_agency_by_platform_customer(
                self.db, customer_ref
            )
        if agency is None:
            agency = await tenant_store.find_agency_by_platform_subscription(
                self.db, subscription_ref
            )
        if agency is None:
            raise UnresolvedTenantError(
                "No agency matches this platform billing event",
                details={
                    "customer_ref": customer_ref,
                    "subscription_ref": subscription_ref,
                    "agency_id": str(agency_id) if agency_id else None,
                },
            )
        return agency

    def _set_status(self, agency: Agency, target: AgencySubscriptionStatus) -> None:
        previous = agency.subscription_status
        agency.subscription_status = target.value
        record_transition("agency", previous, target.value)
        if previous != target.value:
            logger.info(
                "agency_subscription_transition",
                agency_id=str(agency.id),
                from_status=previous,
                to_status=target.value,
            )

    @staticmethod
    def _is_stale(agency: Agency, subscription_ref: Optional[str]) -> bool:
        """Event is about a subscription other than the one bound to the agency."""
        return bool(
            subscription_ref
            and agency.platform_subscription_ref
            and subscription_ref != agency.platform_subscription_ref
        )

    async def handle_checkout_completed(self, event: CheckoutCompleted) -> None:
        agency = await self._resolve(
            event.customer_ref,
            event.subscription_ref,
            agency_id=event.metadata.get("agency_id"),
        )
        same_subscription = bool(
            event.subscription_ref
            and event.subscription_ref == agency.platform_subscription_ref
        )
        already_billing = agency.subscription_status in {
            AgencySubscriptionStatus.ACTIVE.value,
            AgencySubscriptionStatus.PAST_DUE.value,
        }

        if event.customer_ref:
            agency.platform_customer_ref = event.customer_ref
        if event.subscription_ref:
            agency.platform_subscription_ref = event.subscription_ref
        if event.metadata.get("plan"):
            agency.plan_type = event.metadata["plan"]

        if same_subscription and already_billing:
            # A payment event for this subscription already landed first.
            logger.info(
                "agency_checkout_after_payment",
                agency_id=str(agency.id),
                status=agency.subscription_status,
            )
        else:
            self._set_status(agency, AgencySubscriptionStatus.TRIAL)
            if not (same_subscription and agency.trial_ends_at):
                agency.trial_ends_at = utcnow() + timedelta(days=self.trial_days)

        await tenant_store.record_agency_event(
            self.db,
            agency.id,
            EVENT_CHECKOUT_COMPLETED,
            event.session_ref,
            details={"plan": agency.plan_type, "subscription_ref": event.subscription_ref},
        )
        await self.db.commit()
        logger.info("agency_checkout_completed", agency_id=str(agency.id))

    async def handle_subscription_changed(self, event: SubscriptionChanged) -> None:
        agency = await self._resolve(
            event.customer_ref,
            event.subscription_ref,
            agency_id=event.metadata.get("agency_id"),
        )
        # A new subscription may replace the bound one only when none is live
        rebinding = event.created and (
            not agency.platform_subscription_ref
            or agency.subscription_status
            in {
                AgencySubscriptionStatus.PENDING.value,
                AgencySubscriptionStatus.CANCELED.value,
            }
        )
        if not rebinding and self._is_stale(agency, event.subscription_ref):
            logger.info(
                "agency_subscription_event_stale",
                agency_id=str(agency.id),
                subscription_ref=event.subscription_ref,
            )
            return

        if rebinding or not agency.platform_subscription_ref:
            agency.platform_subscription_ref = event.subscription_ref
        if event.customer_ref and not agency.platform_customer_ref:
            agency.platform_customer_ref = event.customer_ref

        target = PROCESSOR_STATUS_MAP.get(event.status)
        if target is None:
            logger.info(
                "agency_subscription_status_unmapped",
                agency_id=str(agency.id),
                processor_status=event.status,
            )
        elif (
            agency.subscription_status == AgencySubscriptionStatus.CANCELED.value
            and not rebinding
        ):
            # Only a new checkout brings a canceled agency back
            logger.info(
                "agency_subscription_update_ignored_canceled",
                agency_id=str(agency.id),
                processor_status=event.status,
            )
        else:
            self._set_status(agency, target)

        if event.trial_end is not None:
            agency.trial_ends_at = event.trial_end

        await self.db.commit()

    async def handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        agency = await self._resolve(event.customer_ref, event.subscription_ref)
        was_canceled = agency.subscription_status == AgencySubscriptionStatus.CANCELED.value
        self._set_status(agency, AgencySubscriptionStatus.CANCELED)
        await tenant_store.record_agency_event(
            self.db, agency.id, EVENT_SUBSCRIPTION_CANCELED, event.subscription_ref
        )
        await self.db.commit()

        if not was_canceled:
            await notify_best_effort(
                self.notifier,
                agency.owner_email,
                NotificationKind.AGENCY_SUBSCRIPTION_CANCELED,
                {"agency_name": agency.name},
            )

    async def handle_trial_will_end(self, event: TrialWillEnd) -> None:
        agency = await self._resolve(event.customer_ref, event.subscription_ref)
        trial_end = event.trial_end or as_utc(agency.trial_ends_at)
        days_left = 0
        if trial_end is not None:
            days_left = max(0, math.ceil((trial_end - utcnow()).total_seconds() / 86400))
        await notify_best_effort(
            self.notifier,
            agency.owner_email,
            NotificationKind.AGENCY_TRIAL_ENDING,
            {"agency_name": agency.name, "days_left": days_left},
        )

    async def handle_invoice_paid(self, event: InvoicePaid) -> None:
        agency = await self._resolve(event.customer_ref, event.subscription_ref)
        agency_id = str(agency.id)

        if self._is_stale(agency, event.subscription_ref):
            logger.info(
                "agency_payment_for_other_subscription",
                agency_id=agency_id,
                subscription_ref=event.subscription_ref,
            )
        elif agency.subscription_status == AgencySubscriptionStatus.CANCELED.value:
            logger.info("agency_payment_after_cancel", agency_id=agency_id)
        else:
            self._set_status(agency, AgencySubscriptionStatus.ACTIVE)

        await tenant_store.record_agency_event(
            self.db,
            agency.id,
            EVENT_PAYMENT_SUCCEEDED,
            event.invoice_ref,
            amount_cents=event.amount_paid_cents,
        )
        await self.db.commit()

        # The payment is real whatever the local status did; commission follows it.
        if agency.referred_by:
            await self._record_commission(agency, event, agency_id)

    async def _record_commission(
        self, agency: Agency, event: InvoicePaid, agency_id: str
    ) -> None:
        ledger = self._ledger_factory(self.db)
        try:
            await ledger.record_commission(
                agency, event.invoice_ref, event.amount_paid_cents
            )
        except DuplicateLedgerEntryError:
            logger.info(
                "commission_already_processed",
                invoice_ref=event.invoice_ref,
                referred_agency_id=agency_id,
            )
        except Exception as exc:
            # The agency's own payment state is already committed.
            logger.error(
                "commission_record_failed",
                invoice_ref=event.invoice_ref,
                referred_agency_id=agency_id,
                error=str(exc),
                exc_info=True,
            )

    async def handle_invoice_payment_failed(self, event: InvoicePaymentFailed) -> None:
        agency = await self._resolve(event.customer_ref, event.subscription_ref)
        if self._is_stale(agency, event.subscription_ref):
            logger.info(
                "agency_payment_for_other_subscription",
                agency_id=str(agency.id),
                subscription_ref=event.subscription_ref,
            )
            return
        if agency.subscription_status == AgencySubscriptionStatus.CANCELED.value:
            logger.info("agency_payment_failure_after_cancel", agency_id=str(agency.id))
            return

        self._set_status(agency, AgencySubscriptionStatus.PAST_DUE)
        first_delivery = await tenant_store.record_agency_event(
            self.db,
            agency.id,
            EVENT_PAYMENT_FAILED,
            event.invoice_ref,
            amount_cents=event.amount_due_cents,
        )
        await self.db.commit()

        if not first_delivery:
            return
        await notify_best_effort(
            self.notifier,
            agency.owner_email,
            NotificationKind.AGENCY_PAYMENT_FAILED,
            {
                "agency_name": agency.name,
                "hosted_invoice_url": event.hosted_invoice_url,
            },
        )
