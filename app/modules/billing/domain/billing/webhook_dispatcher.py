"""
Webhook Dispatcher - platform and Connect Stripe events

verify signature -> decode to a typed event -> route through a fixed table.
Unknown types, malformed objects and events for tenants we do not know are
acknowledged and ignored. Only a bad signature (400) or an unexpected
internal error (500, so Stripe retries) produce a non-2xx response.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agency import Agency
from app.shared.core.config import get_settings
from app.shared.core.exceptions import SignatureInvalidError, UnresolvedTenantError
from app.shared.core.notifications import NotificationCollaborator, NotificationKind
from app.shared.core.ops_metrics import (
    WEBHOOK_EVENTS_TOTAL,
    WEBHOOK_PROCESSING_DURATION,
    WEBHOOK_SIGNATURE_FAILURES,
)
from app.shared.core.provisioning import ProvisioningCollaborator

from . import tenant_store
from .agency_state_machine import AgencyBillingStateMachine
from .billing_shared import logger, notify_best_effort
from .client_state_machine import ClientBillingStateMachine
from .commission_ledger import CommissionLedger
from .events import (
    AccountUpdated,
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    UnrecognizedEvent,
    decode_event,
)
from .stripe_gateway import verify_webhook

SOURCE_PLATFORM = "platform"
SOURCE_CONNECT = "connect"

OUTCOME_HANDLED = "handled"
OUTCOME_IGNORED = "ignored"

Handler = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class DispatchResult:
    event_type: str
    outcome: str
    reason: Optional[str] = None

    def as_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"received": True, "status": self.outcome}
        if self.reason:
            body["reason"] = self.reason
        return body


class WebhookDispatcher:
    """One instance per request; owns no state beyond its collaborators."""

    def __init__(
        self,
        db: AsyncSession,
        provisioning: ProvisioningCollaborator,
        notifier: NotificationCollaborator,
        *,
        ledger_factory: Callable[[AsyncSession], CommissionLedger] | None = None,
    ):
        self.db = db
        self.provisioning = provisioning
        self.notifier = notifier
        self._ledger_factory = ledger_factory

    def _verify(self, source: str, payload: bytes, signature: Optional[str]) -> BillingEvent:
        settings = get_settings()
        secret = (
            settings.STRIPE_PLATFORM_WEBHOOK_SECRET
            if source == SOURCE_PLATFORM
            else settings.STRIPE_CONNECT_WEBHOOK_SECRET
        )
        try:
            body = verify_webhook(payload, signature, secret, source=source)
        except SignatureInvalidError:
            WEBHOOK_SIGNATURE_FAILURES.labels(source=source).inc()
            raise
        event = decode_event(body)
        logger.info(
            "stripe_webhook_received",
            source=source,
            stripe_event=event.event_type,
            event_id=event.event_id,
            account_ref=event.account_ref,
        )
        return event

    async def dispatch_platform(
        self, payload: bytes, signature: Optional[str]
    ) -> DispatchResult:
        event = self._verify(SOURCE_PLATFORM, payload, signature)
        return await self.route_platform(event)

    async def dispatch_connect(
        self, payload: bytes, signature: Optional[str]
    ) -> DispatchResult:
        event = self._verify(SOURCE_CONNECT, payload, signature)
        return await self.route_connect(event)

    async def route_platform(self, event: BillingEvent) -> DispatchResult:
        machine = AgencyBillingStateMachine(
            self.db, self.notifier, ledger_factory=self._ledger_factory
        )
        handlers: dict[type, Handler] = {
            CheckoutCompleted: machine.handle_checkout_completed,
            SubscriptionChanged: machine.handle_subscription_changed,
            SubscriptionDeleted: machine.handle_subscription_deleted,
            TrialWillEnd: machine.handle_trial_will_end,
            InvoicePaid: machine.handle_invoice_paid,
            InvoicePaymentFailed: machine.handle_invoice_payment_failed,
        }
        return await self._run(SOURCE_PLATFORM, event, handlers)

    async def route_connect(self, event: BillingEvent) -> DispatchResult:
        if isinstance(event.payload, UnrecognizedEvent):
            return self._ignore(SOURCE_CONNECT, event, event.payload.reason)

        account_ref = event.account_ref
        if account_ref is None and isinstance(event.payload, AccountUpdated):
            account_ref = event.payload.account_ref
        agency = await tenant_store.find_agency_by_connect_account(self.db, account_ref)
        if agency is None:
            logger.warning(
                "connect_webhook_unknown_account",
                stripe_event=event.event_type,
                account_ref=account_ref,
            )
            return self._ignore(SOURCE_CONNECT, event, "unknown connected account")

        machine = ClientBillingStateMachine(
            self.db, agency, self.provisioning, self.notifier
        )
        handlers: dict[type, Handler] = {
            AccountUpdated: lambda payload: self._sync_connect_account(agency, payload),
            CheckoutCompleted: machine.handle_checkout_completed,
            SubscriptionChanged: machine.handle_subscription_changed,
            SubscriptionDeleted: machine.handle_subscription_deleted,
            InvoicePaid: machine.handle_invoice_paid,
            InvoicePaymentFailed: machine.handle_invoice_payment_failed,
        }
        return await self._run(SOURCE_CONNECT, event, handlers)

    def _ignore(self, source: str, event: BillingEvent, reason: str) -> DispatchResult:
        WEBHOOK_EVENTS_TOTAL.labels(
            source=source, event_type=event.event_type or "unknown", outcome=OUTCOME_IGNORED
        ).inc()
        logger.info(
            "stripe_webhook_ignored",
            source=source,
            stripe_event=event.event_type,
            reason=reason,
        )
        return DispatchResult(event.event_type, OUTCOME_IGNORED, reason)

    async def _run(
        self, source: str, event: BillingEvent, handlers: dict[type, Handler]
    ) -> DispatchResult:
        if isinstance(event.payload, UnrecognizedEvent):
            return self._ignore(source, event, event.payload.reason)

        handler = handlers.get(type(event.payload))
        if handler is None:
            return self._ignore(source, event, f"not routed for {source} events")

        try:
            with WEBHOOK_PROCESSING_DURATION.labels(source=source).time():
                await handler(event.payload)
        except UnresolvedTenantError as exc:
            await self.db.rollback()
            logger.warning(
                "stripe_webhook_unresolved_tenant",
                source=source,
                stripe_event=event.event_type,
                **exc.details,
            )
            return self._ignore(source, event, "unresolved tenant")
        except Exception:
            await self.db.rollback()
            WEBHOOK_EVENTS_TOTAL.labels(
                source=source, event_type=event.event_type, outcome="failed"
            ).inc()
            logger.error(
                "stripe_webhook_processing_failed",
                source=source,
                stripe_event=event.event_type,
                event_id=event.event_id,
                exc_info=True,
            )
            raise

        WEBHOOK_EVENTS_TOTAL.labels(
            source=source, event_type=event.event_type, outcome=OUTCOME_HANDLED
        ).inc()
        return DispatchResult(event.event_type, OUTCOME_HANDLED)

    async def _sync_connect_account(self, agency: Agency, payload: AccountUpdated) -> None:
        """Mirror the connected account's capabilities onto the agency."""
        newly_chargeable = payload.charges_enabled and not agency.charges_enabled
        agency.charges_enabled = payload.charges_enabled
        agency.payouts_enabled = payload.payouts_enabled
        agency.onboarding_complete = payload.charges_enabled and payload.payouts_enabled
        await self.db.commit()

        logger.info(
            "connect_account_synced",
            agency_id=str(agency.id),
            charges_enabled=payload.charges_enabled,
            payouts_enabled=payload.payouts_enabled,
        )
        if newly_chargeable:
            await notify_best_effort(
                self.notifier,
                agency.owner_email,
                NotificationKind.AGENCY_CONNECT_READY,
                {"agency_name": agency.name},
            )
