"""
Client Subscription State Machine - Connect billing events

States: trial -> active <-> past_due -> canceled, plus trial_expired which
only the reconciliation sweep writes.

Besides `subscription_status` this machine owns the derived operational
`status` and drives the provisioned voice resource:

- entering active: status=active, enable resource, clear trial_ends_at
- canceled / unpaid: status=suspended, disable resource (a late unpaid never
  rewrites canceled or trial_expired)
- trialing after a suspension: status=active, enable resource
- past_due: subscription_status only, status untouched (grace)

Local state is committed before the provisioning call; a failed call is
logged and left for drift reconciliation.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agency import Agency
from app.models.client import Client, ClientStatus, ClientSubscriptionStatus
from app.shared.core.exceptions import UnresolvedTenantError
from app.shared.core.notifications import NotificationCollaborator, NotificationKind
from app.shared.core.provisioning import ProvisioningCollaborator

from . import tenant_store
from .billing_shared import (
    disable_resource_best_effort,
    enable_resource_best_effort,
    logger,
    notify_best_effort,
    record_transition,
)
from .events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
)

DEFAULT_PLAN = "starter"
DEFAULT_CALL_LIMIT = 50

_SUSPENDING_STATUSES = {"canceled", "incomplete_expired", "unpaid"}
_UNPAID_IGNORED_FROM = {
    ClientSubscriptionStatus.CANCELED.value,
    ClientSubscriptionStatus.TRIAL_EXPIRED.value,
}
_REACTIVATION_SOURCES = {
    ClientSubscriptionStatus.TRIAL_EXPIRED.value,
    ClientSubscriptionStatus.CANCELED.value,
    ClientSubscriptionStatus.PAST_DUE.value,
}


def _parse_call_limit(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


class ClientBillingStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        agency: Agency,
        provisioning: ProvisioningCollaborator,
        notifier: NotificationCollaborator,
    ):
        self.db = db
        self.agency = agency
        self.provisioning = provisioning
        self.notifier = notifier

    async def _resolve(
        self,
        customer_ref: Optional[str],
        subscription_ref: Optional[str] = None,
        client_id: Any = None,
    ) -> Client:
        client = None
        parsed_id = tenant_store.parse_uuid(client_id)
        if parsed_id is not None:
            client = await tenant_store.get_client(
                self.db, parsed_id, agency_id=self.agency.id
            )
        if client is None:
            client = await tenant_store.find_client_by_connect_customer(
                self.db, self.agency.id, customer_ref
            )
        if client is None:
            client = await tenant_store.find_client_by_connect_subscription(
                self.db, self.agency.id, subscription_ref
            )
        if client is None:
            raise UnresolvedTenantError(
                "No client of this agency matches the Connect billing event",
                details={
                    "agency_id": str(self.agency.id),
                    "customer_ref": customer_ref,
                    "subscription_ref": subscription_ref,
                },
            )
        return client

    def _context(self, client: Client) -> dict[str, str]:
        return {"client_id": str(client.id), "agency_id": str(self.agency.id)}

    def _notification_data(self, client: Client, **extra: Any) -> dict[str, Any]:
        return {
            "agency_name": self.agency.name,
            "business_name": client.business_name,
            **extra,
        }

    def _set_subscription_status(
        self, client: Client, target: ClientSubscriptionStatus
    ) -> str:
        previous = client.subscription_status
        client.subscription_status = target.value
        record_transition("client", previous, target.value)
        if previous != target.value:
            logger.info(
                "client_subscription_transition",
                from_status=previous,
                to_status=target.value,
                **self._context(client),
            )
        return previous

    def _activate(self, client: Client) -> bool:
        """Apply the active target state. True when this crossed into active."""
        previous = self._set_subscription_status(client, ClientSubscriptionStatus.ACTIVE)
        client.status = ClientStatus.ACTIVE.value
        client.trial_ends_at = None
        return previous != ClientSubscriptionStatus.ACTIVE.value

    def _suspend(self, client: Client, target: ClientSubscriptionStatus) -> str:
        previous = self._set_subscription_status(client, target)
        client.status = ClientStatus.SUSPENDED.value
        return previous

    @staticmethod
    def _is_stale(client: Client, subscription_ref: Optional[str]) -> bool:
        return bool(
            subscription_ref
            and client.connect_subscription_ref
            and subscription_ref != client.connect_subscription_ref
        )

    async def _after_activation(
        self, client: Client, previous: str, crossed: bool
    ) -> None:
        await enable_resource_best_effort(
            self.provisioning, client.resource_id, **self._context(client)
        )
        if crossed:
            await notify_best_effort(
                self.notifier,
                client.email,
                NotificationKind.CLIENT_SUBSCRIPTION_ACTIVATED,
                self._notification_data(
                    client,
                    plan=client.plan_type,
                    call_limit=client.monthly_call_limit,
                    reactivated=previous in _REACTIVATION_SOURCES,
                ),
            )

    async def handle_checkout_completed(self, event: CheckoutCompleted) -> None:
        client = await self._resolve(
            event.customer_ref,
            event.subscription_ref,
            client_id=event.metadata.get("client_id"),
        )
        if event.customer_ref:
            client.connect_customer_ref = event.customer_ref
        if event.subscription_ref:
            client.connect_subscription_ref = event.subscription_ref
        client.plan_type = event.metadata.get("plan") or client.plan_type or DEFAULT_PLAN
        client.monthly_call_limit = (
            _parse_call_limit(event.metadata.get("call_limit"))
            or client.monthly_call_limit
            or DEFAULT_CALL_LIMIT
        )

        previous = client.subscription_status
        crossed = self._activate(client)
        if crossed:
            # Usage rolls over on the edge into active only
            client.calls_this_month = 0
        await self.db.commit()

        logger.info(
            "client_checkout_completed",
            upgraded=previous in _REACTIVATION_SOURCES,
            **self._context(client),
        )
        await self._after_activation(client, previous, crossed)

    async def handle_subscription_changed(self, event: SubscriptionChanged) -> None:
        client = await self._resolve(event.customer_ref, event.subscription_ref)
        if self._is_stale(client, event.subscription_ref):
            logger.info(
                "client_subscription_event_stale",
                subscription_ref=event.subscription_ref,
                **self._context(client),
            )
            return
        if not client.connect_subscription_ref:
            client.connect_subscription_ref = event.subscription_ref

        current = client.subscription_status
        processor_status = event.status

        if processor_status == "active":
            if current == ClientSubscriptionStatus.CANCELED.value and not event.created:
                logger.info(
                    "client_subscription_update_ignored_canceled",
                    **self._context(client),
                )
                await self.db.commit()
                return
            crossed = self._activate(client)
            await self.db.commit()
            await self._after_activation(client, current, crossed)
            return

        if processor_status in _SUSPENDING_STATUSES:
            if processor_status == "unpaid" and current in _UNPAID_IGNORED_FROM:
                logger.info(
                    "client_subscription_unpaid_ignored",
                    current_status=current,
                    **self._context(client),
                )
                await self.db.commit()
                return
            target = (
                ClientSubscriptionStatus.PAST_DUE
                if processor_status == "unpaid"
                else ClientSubscriptionStatus.CANCELED
            )
            self._suspend(client, target)
            await self.db.commit()
            await disable_resource_best_effort(
                self.provisioning, client.resource_id, **self._context(client)
            )
            return

        resumed = False
        if processor_status == "past_due":
            if current != ClientSubscriptionStatus.CANCELED.value:
                self._set_subscription_status(client, ClientSubscriptionStatus.PAST_DUE)
        elif processor_status == "trialing":
            if current in {
                ClientSubscriptionStatus.TRIAL.value,
                ClientSubscriptionStatus.PAST_DUE.value,
            }:
                self._set_subscription_status(client, ClientSubscriptionStatus.TRIAL)
                resumed = client.status != ClientStatus.ACTIVE.value
                client.status = ClientStatus.ACTIVE.value
            if event.trial_end is not None and (
                client.subscription_status == ClientSubscriptionStatus.TRIAL.value
            ):
                client.trial_ends_at = event.trial_end
        else:
            logger.info(
                "client_subscription_status_unmapped",
                processor_status=processor_status,
                **self._context(client),
            )
        await self.db.commit()

        if resumed:
            await enable_resource_best_effort(
                self.provisioning, client.resource_id, **self._context(client)
            )

    async def handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        client = await self._resolve(event.customer_ref, event.subscription_ref)
        if self._is_stale(client, event.subscription_ref):
            logger.info(
                "client_subscription_event_stale",
                subscription_ref=event.subscription_ref,
                **self._context(client),
            )
            return

        previous = self._suspend(client, ClientSubscriptionStatus.CANCELED)
        await self.db.commit()

        await disable_resource_best_effort(
            self.provisioning, client.resource_id, **self._context(client)
        )
        if previous != ClientSubscriptionStatus.CANCELED.value:
            await notify_best_effort(
                self.notifier,
                client.email,
                NotificationKind.CLIENT_SUBSCRIPTION_CANCELED,
                self._notification_data(client),
            )

    async def handle_invoice_paid(self, event: InvoicePaid) -> None:
        client = await self._resolve(event.customer_ref, event.subscription_ref)
        if self._is_stale(client, event.subscription_ref):
            logger.info(
                "client_payment_for_other_subscription",
                subscription_ref=event.subscription_ref,
                **self._context(client),
            )
            return

        previous = client.subscription_status
        crossed = self._activate(client)
        # Once per invoice: covers renewals, survives redelivery
        if client.last_usage_reset_invoice_ref != event.invoice_ref:
            client.calls_this_month = 0
            client.last_usage_reset_invoice_ref = event.invoice_ref
        await self.db.commit()

        logger.info(
            "client_payment_succeeded",
            invoice_ref=event.invoice_ref,
            amount_paid_cents=event.amount_paid_cents,
            **self._context(client),
        )
        await self._after_activation(client, previous, crossed)

    async def handle_invoice_payment_failed(self, event: InvoicePaymentFailed) -> None:
        client = await self._resolve(event.customer_ref, event.subscription_ref)
        if self._is_stale(client, event.subscription_ref):
            logger.info(
                "client_payment_for_other_subscription",
                subscription_ref=event.subscription_ref,
                **self._context(client),
            )
            return

        previous = client.subscription_status
        if previous in {
            ClientSubscriptionStatus.CANCELED.value,
            ClientSubscriptionStatus.TRIAL_EXPIRED.value,
        }:
            logger.info(
                "client_payment_failure_ignored",
                subscription_status=previous,
                **self._context(client),
            )
            return

        self._set_subscription_status(client, ClientSubscriptionStatus.PAST_DUE)
        await self.db.commit()

        if previous != ClientSubscriptionStatus.PAST_DUE.value:
            await notify_best_effort(
                self.notifier,
                client.email,
                NotificationKind.CLIENT_PAYMENT_FAILED,
                self._notification_data(
                    client, hosted_invoice_url=event.hosted_invoice_url
                ),
            )
