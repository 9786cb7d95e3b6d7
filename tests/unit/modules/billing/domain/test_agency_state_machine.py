"""
Tests for the agency subscription state machine (platform billing events).
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from app.models.subscription_event import AgencySubscriptionEvent
from app.modules.billing.domain.billing.agency_state_machine import (
    AgencyBillingStateMachine,
)
from app.modules.billing.domain.billing.billing_shared import as_utc, utcnow
from app.modules.billing.domain.billing.events import (
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
)
from app.shared.core.exceptions import CollaboratorCallFailed, UnresolvedTenantError
from app.shared.core.notifications import NotificationKind


def _checkout(agency, *, customer="cus_a", subscription="sub_a", plan="pro"):
    return CheckoutCompleted(
        session_ref=f"cs_{subscription}",
        customer_ref=customer,
        subscription_ref=subscription,
        metadata={"agency_id": str(agency.id), "plan": plan},
    )


def _paid(invoice="in_1", amount=10000, customer="cus_a", subscription="sub_a"):
    return InvoicePaid(
        invoice_ref=invoice,
        customer_ref=customer,
        subscription_ref=subscription,
        amount_paid_cents=amount,
    )


async def _events(db, agency_id, event_type):
    return (
        await db.scalars(
            select(AgencySubscriptionEvent).where(
                AgencySubscriptionEvent.agency_id == agency_id,
                AgencySubscriptionEvent.event_type == event_type,
            )
        )
    ).all()


@pytest.mark.asyncio
async def test_checkout_starts_trial_and_binds_refs(db_session, make_agency, notifier):
    agency = await make_agency()
    machine = AgencyBillingStateMachine(db_session, notifier)

    await machine.handle_checkout_completed(_checkout(agency))

    assert agency.subscription_status == "trial"
    assert agency.platform_customer_ref == "cus_a"
    assert agency.platform_subscription_ref == "sub_a"
    assert agency.plan_type == "pro"
    remaining = as_utc(agency.trial_ends_at) - utcnow()
    assert timedelta(days=13, hours=23) < remaining <= timedelta(days=14)
    assert len(await _events(db_session, agency.id, "checkout_completed")) == 1


@pytest.mark.asyncio
async def test_checkout_resolves_agency_by_customer_ref(db_session, make_agency, notifier):
    agency = await make_agency(platform_customer_ref="cus_known")
    machine = AgencyBillingStateMachine(db_session, notifier)

    await machine.handle_checkout_completed(
        CheckoutCompleted(
            session_ref="cs_1", customer_ref="cus_known", subscription_ref="sub_1", metadata={}
        )
    )

    await db_session.refresh(agency)
    assert agency.subscription_status == "trial"
    assert agency.platform_subscription_ref == "sub_1"


@pytest.mark.asyncio
async def test_unknown_agency_raises_unresolved(db_session, notifier):
    machine = AgencyBillingStateMachine(db_session, notifier)

    with pytest.raises(UnresolvedTenantError):
        await machine.handle_invoice_paid(_paid(customer="cus_nobody", subscription="sub_x"))


@pytest.mark.asyncio
async def test_payment_activates_and_pays_referrer_once(db_session, make_agency, notifier):
    referrer = await make_agency(referral_code="alpha", subscription_status="active")
    referred = await make_agency(referral_code="bravo", referred_by="alpha")
    machine = AgencyBillingStateMachine(db_session, notifier)
    await machine.handle_checkout_completed(_checkout(referred))

    await machine.handle_invoice_paid(_paid())
    await machine.handle_invoice_paid(_paid())

    await db_session.refresh(referred)
    await db_session.refresh(referrer)
    assert referred.subscription_status == "active"
    assert referrer.referral_balance_cents == 2000
    assert referrer.referral_earnings_cents_lifetime == 2000
    assert len(await _events(db_session, referred.id, "payment_succeeded")) == 1


@pytest.mark.asyncio
async def test_checkout_after_payment_keeps_active(db_session, make_agency, notifier):
    agency = await make_agency(platform_customer_ref="cus_a")
    machine = AgencyBillingStateMachine(db_session, notifier)

    # Payment lands before checkout for the same subscription
    await machine.handle_subscription_changed(
        SubscriptionChanged(
            subscription_ref="sub_a",
            customer_ref="cus_a",
            status="active",
            trial_end=None,
            created=True,
        )
    )
    await machine.handle_invoice_paid(_paid())
    await machine.handle_checkout_completed(_checkout(agency))

    await db_session.refresh(agency)
    assert agency.subscription_status == "active"


@pytest.mark.asyncio
async def test_payment_failure_marks_past_due_and_notifies_once(
    db_session, make_agency, notifier
):
    agency = await make_agency(
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_a",
        subscription_status="active",
    )
    machine = AgencyBillingStateMachine(db_session, notifier)
    failed = InvoicePaymentFailed(
        invoice_ref="in_9",
        customer_ref="cus_a",
        subscription_ref="sub_a",
        amount_due_cents=4900,
        hosted_invoice_url="https://pay.test/in_9",
    )

    await machine.handle_invoice_payment_failed(failed)
    await machine.handle_invoice_payment_failed(failed)

    await db_session.refresh(agency)
    assert agency.subscription_status == "past_due"
    notifier.notify.assert_awaited_once()
    recipient, kind, data = notifier.notify.await_args.args
    assert recipient == agency.owner_email
    assert kind is NotificationKind.AGENCY_PAYMENT_FAILED
    assert data["hosted_invoice_url"] == "https://pay.test/in_9"


@pytest.mark.asyncio
async def test_deletion_cancels_and_later_payment_does_not_revive(
    db_session, make_agency, notifier
):
    referrer = await make_agency(referral_code="alpha")
    agency = await make_agency(
        referred_by="alpha",
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_a",
        subscription_status="active",
    )
    machine = AgencyBillingStateMachine(db_session, notifier)

    await machine.handle_subscription_deleted(
        SubscriptionDeleted(subscription_ref="sub_a", customer_ref="cus_a")
    )
    await machine.handle_subscription_deleted(
        SubscriptionDeleted(subscription_ref="sub_a", customer_ref="cus_a")
    )
    await machine.handle_invoice_paid(_paid(invoice="in_late"))

    await db_session.refresh(agency)
    await db_session.refresh(referrer)
    assert agency.subscription_status == "canceled"
    # The payment itself still happened, so the referrer is still owed
    assert referrer.referral_balance_cents == 2000
    notifier.notify.assert_awaited_once()
    assert notifier.notify.await_args.args[1] is NotificationKind.AGENCY_SUBSCRIPTION_CANCELED


@pytest.mark.asyncio
async def test_update_for_other_subscription_is_ignored(db_session, make_agency, notifier):
    agency = await make_agency(
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_current",
        subscription_status="active",
    )
    machine = AgencyBillingStateMachine(db_session, notifier)

    await machine.handle_subscription_changed(
        SubscriptionChanged(
            subscription_ref="sub_old",
            customer_ref="cus_a",
            status="canceled",
            trial_end=None,
        )
    )

    await db_session.refresh(agency)
    assert agency.subscription_status == "active"
    assert agency.platform_subscription_ref == "sub_current"


@pytest.mark.asyncio
async def test_canceled_agency_only_revived_by_new_subscription(
    db_session, make_agency, notifier
):
    agency = await make_agency(
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_a",
        subscription_status="canceled",
    )
    machine = AgencyBillingStateMachine(db_session, notifier)
    trial_end = utcnow() + timedelta(days=14)

    await machine.handle_subscription_changed(
        SubscriptionChanged(
            subscription_ref="sub_a", customer_ref="cus_a", status="active", trial_end=None
        )
    )
    await db_session.refresh(agency)
    assert agency.subscription_status == "canceled"

    await machine.handle_subscription_changed(
        SubscriptionChanged(
            subscription_ref="sub_b",
            customer_ref="cus_a",
            status="trialing",
            trial_end=trial_end,
            created=True,
        )
    )
    await db_session.refresh(agency)
    assert agency.subscription_status == "trial"
    assert agency.platform_subscription_ref == "sub_b"


@pytest.mark.asyncio
async def test_unmapped_processor_status_leaves_state(db_session, make_agency, notifier):
    agency = await make_agency(
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_a",
        subscription_status="trial",
    )
    machine = AgencyBillingStateMachine(db_session, notifier)

    await machine.handle_subscription_changed(
        SubscriptionChanged(
            subscription_ref="sub_a", customer_ref="cus_a", status="incomplete", trial_end=None
        )
    )

    await db_session.refresh(agency)
    assert agency.subscription_status == "trial"


@pytest.mark.asyncio
async def test_trial_will_end_notifies_without_state_change(
    db_session, make_agency, notifier
):
    agency = await make_agency(
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_a",
        subscription_status="trial",
    )
    machine = AgencyBillingStateMachine(db_session, notifier)

    await machine.handle_trial_will_end(
        TrialWillEnd(
            subscription_ref="sub_a",
            customer_ref="cus_a",
            trial_end=utcnow() + timedelta(days=2, hours=12),
        )
    )

    await db_session.refresh(agency)
    assert agency.subscription_status == "trial"
    _, kind, data = notifier.notify.await_args.args
    assert kind is NotificationKind.AGENCY_TRIAL_ENDING
    assert data["days_left"] == 3


@pytest.mark.asyncio
async def test_notification_failure_does_not_fail_event(db_session, make_agency, notifier):
    notifier.notify.side_effect = CollaboratorCallFailed(
        "resend down", collaborator="notification"
    )
    agency = await make_agency(
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_a",
        subscription_status="active",
    )
    machine = AgencyBillingStateMachine(db_session, notifier)

    await machine.handle_subscription_deleted(
        SubscriptionDeleted(subscription_ref="sub_a", customer_ref="cus_a")
    )

    await db_session.refresh(agency)
    assert agency.subscription_status == "canceled"


@pytest.mark.asyncio
async def test_commission_failure_does_not_undo_payment(db_session, make_agency, notifier):
    await make_agency(referral_code="alpha")
    agency = await make_agency(
        referred_by="alpha",
        platform_customer_ref="cus_a",
        platform_subscription_ref="sub_a",
        subscription_status="trial",
    )
    broken_ledger = MagicMock()
    broken_ledger.record_commission = AsyncMock(side_effect=RuntimeError("db hiccup"))
    machine = AgencyBillingStateMachine(
        db_session, notifier, ledger_factory=lambda _db: broken_ledger
    )

    await machine.handle_invoice_paid(_paid())

    await db_session.refresh(agency)
    assert agency.subscription_status == "active"
    broken_ledger.record_commission.assert_awaited_once()
