"""
Tests for decoding Stripe webhook bodies into typed billing events.
"""

from datetime import datetime, timezone

from app.modules.billing.domain.billing.events import (
    AccountUpdated,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    UnrecognizedEvent,
    decode_event,
)
from tests.utils import stripe_event


def test_checkout_session_decodes_refs_and_metadata():
    event = decode_event(
        stripe_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"agency_id": "a-1", "plan": "pro", "empty": None},
            },
            event_id="evt_1",
        )
    )

    assert event.event_id == "evt_1"
    assert event.account_ref is None
    assert event.payload == CheckoutCompleted(
        session_ref="cs_1",
        customer_ref="cus_1",
        subscription_ref="sub_1",
        metadata={"agency_id": "a-1", "plan": "pro"},
    )


def test_subscription_created_and_updated_share_a_variant():
    created = decode_event(
        stripe_event(
            "customer.subscription.created",
            {"id": "sub_1", "customer": "cus_1", "status": "trialing", "trial_end": 1893456000},
        )
    )
    updated = decode_event(
        stripe_event(
            "customer.subscription.updated",
            {"id": "sub_1", "customer": {"id": "cus_1"}, "status": "active"},
        )
    )

    assert isinstance(created.payload, SubscriptionChanged)
    assert created.payload.created is True
    assert created.payload.trial_end == datetime.fromtimestamp(1893456000, tz=timezone.utc)
    assert isinstance(updated.payload, SubscriptionChanged)
    assert updated.payload.created is False
    # Expanded objects are reduced to their id
    assert updated.payload.customer_ref == "cus_1"


def test_subscription_deleted_and_trial_will_end():
    deleted = decode_event(
        stripe_event("customer.subscription.deleted", {"id": "sub_9", "customer": "cus_9"})
    )
    ending = decode_event(
        stripe_event(
            "customer.subscription.trial_will_end",
            {"id": "sub_9", "customer": "cus_9", "trial_end": None},
        )
    )

    assert deleted.payload == SubscriptionDeleted(subscription_ref="sub_9", customer_ref="cus_9")
    assert ending.payload == TrialWillEnd(
        subscription_ref="sub_9", customer_ref="cus_9", trial_end=None
    )


def test_invoice_events_read_nested_subscription_reference():
    paid = decode_event(
        stripe_event(
            "invoice.payment_succeeded",
            {
                "id": "in_1",
                "customer": "cus_1",
                "amount_paid": 10000,
                "parent": {"subscription_details": {"subscription": "sub_1"}},
                "hosted_invoice_url": "https://pay.test/in_1",
            },
        )
    )
    failed = decode_event(
        stripe_event(
            "invoice.payment_failed",
            {"id": "in_2", "customer": "cus_1", "subscription": "sub_1", "amount_due": 4900},
        )
    )

    assert paid.payload == InvoicePaid(
        invoice_ref="in_1",
        customer_ref="cus_1",
        subscription_ref="sub_1",
        amount_paid_cents=10000,
        hosted_invoice_url="https://pay.test/in_1",
    )
    assert isinstance(failed.payload, InvoicePaymentFailed)
    assert failed.payload.amount_due_cents == 4900
    assert failed.payload.subscription_ref == "sub_1"


def test_invoice_paid_alias_decodes_like_payment_succeeded():
    event = decode_event(
        stripe_event("invoice.paid", {"id": "in_3", "customer": "cus_1", "amount_paid": 0})
    )

    assert isinstance(event.payload, InvoicePaid)
    assert event.payload.amount_paid_cents == 0


def test_account_updated_carries_connected_account():
    event = decode_event(
        stripe_event(
            "account.updated",
            {"id": "acct_1", "charges_enabled": True, "payouts_enabled": False},
            account="acct_1",
        )
    )

    assert event.account_ref == "acct_1"
    assert event.payload == AccountUpdated(
        account_ref="acct_1",
        charges_enabled=True,
        payouts_enabled=False,
        details_submitted=False,
    )


def test_unknown_type_is_unrecognized():
    event = decode_event(stripe_event("payout.created", {"id": "po_1"}))

    assert isinstance(event.payload, UnrecognizedEvent)
    assert event.payload.reason == "unhandled event type"


def test_known_type_with_malformed_object_is_unrecognized():
    missing_id = decode_event(stripe_event("invoice.payment_succeeded", {"amount_paid": 100}))
    bad_amount = decode_event(
        stripe_event("invoice.payment_succeeded", {"id": "in_1", "amount_paid": "100"})
    )
    no_status = decode_event(stripe_event("customer.subscription.updated", {"id": "sub_1"}))

    for event in (missing_id, bad_amount, no_status):
        assert isinstance(event.payload, UnrecognizedEvent)
        assert event.payload.reason.startswith("malformed")


def test_body_without_data_object_is_unrecognized():
    event = decode_event({"id": "evt_1", "type": "invoice.payment_failed", "data": {}})

    assert isinstance(event.payload, UnrecognizedEvent)
    assert event.payload.reason == "missing data.object"
