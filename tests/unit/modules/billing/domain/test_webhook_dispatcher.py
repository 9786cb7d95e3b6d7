"""
Tests for webhook verification and routing.
"""

import json

import pytest

from app.modules.billing.domain.billing.events import decode_event
from app.modules.billing.domain.billing.stripe_gateway import verify_webhook
from app.modules.billing.domain.billing.webhook_dispatcher import WebhookDispatcher
from app.shared.core.exceptions import ConfigurationError, SignatureInvalidError
from app.shared.core.notifications import NotificationKind
from tests.utils import CONNECT_SECRET, PLATFORM_SECRET, sign_payload, stripe_event


@pytest.fixture
def dispatcher(db_session, provisioning, notifier):
    return WebhookDispatcher(db_session, provisioning, notifier)


class TestVerifyWebhook:
    def test_valid_signature_returns_body(self):
        payload = json.dumps(stripe_event("invoice.paid", {"id": "in_1"})).encode()

        body = verify_webhook(
            payload, sign_payload(payload, PLATFORM_SECRET), PLATFORM_SECRET, source="platform"
        )

        assert body["type"] == "invoice.paid"

    def test_wrong_secret_is_rejected(self):
        payload = json.dumps(stripe_event("invoice.paid", {"id": "in_1"})).encode()

        with pytest.raises(SignatureInvalidError):
            verify_webhook(
                payload, sign_payload(payload, CONNECT_SECRET), PLATFORM_SECRET, source="platform"
            )

    def test_tampered_body_is_rejected(self):
        payload = json.dumps(stripe_event("invoice.paid", {"id": "in_1"})).encode()
        signature = sign_payload(payload, PLATFORM_SECRET)

        with pytest.raises(SignatureInvalidError):
            verify_webhook(
                payload.replace(b"in_1", b"in_2"), signature, PLATFORM_SECRET, source="platform"
            )

    def test_expired_timestamp_is_rejected(self):
        payload = json.dumps(stripe_event("invoice.paid", {"id": "in_1"})).encode()
        signature = sign_payload(payload, PLATFORM_SECRET, timestamp=1_000_000_000)

        with pytest.raises(SignatureInvalidError):
            verify_webhook(payload, signature, PLATFORM_SECRET, source="platform")

    def test_missing_signature_is_rejected(self):
        with pytest.raises(SignatureInvalidError):
            verify_webhook(b"{}", None, PLATFORM_SECRET, source="platform")

    def test_missing_secret_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            verify_webhook(b"{}", "t=1,v1=abc", "", source="connect")


@pytest.mark.asyncio
async def test_platform_dispatch_handles_checkout(db_session, make_agency, dispatcher):
    agency = await make_agency()
    payload = json.dumps(
        stripe_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "customer": "cus_a",
                "subscription": "sub_a",
                "metadata": {"agency_id": str(agency.id)},
            },
        )
    ).encode()

    result = await dispatcher.dispatch_platform(payload, sign_payload(payload, PLATFORM_SECRET))

    assert result.as_response() == {"received": True, "status": "handled"}
    await db_session.refresh(agency)
    assert agency.subscription_status == "trial"


@pytest.mark.asyncio
async def test_platform_dispatch_ignores_unknown_type(dispatcher):
    result = await dispatcher.route_platform(
        decode_event(stripe_event("payout.paid", {"id": "po_1"}))
    )

    assert result.outcome == "ignored"
    assert result.reason == "unhandled event type"


@pytest.mark.asyncio
async def test_platform_dispatch_acks_unresolved_agency(dispatcher):
    result = await dispatcher.route_platform(
        decode_event(
            stripe_event(
                "invoice.payment_failed",
                {"id": "in_1", "customer": "cus_ghost", "amount_due": 4900},
            )
        )
    )

    assert result.as_response() == {
        "received": True,
        "status": "ignored",
        "reason": "unresolved tenant",
    }


@pytest.mark.asyncio
async def test_account_updated_is_not_routed_on_platform(dispatcher):
    result = await dispatcher.route_platform(
        decode_event(stripe_event("account.updated", {"id": "acct_1", "charges_enabled": True}))
    )

    assert result.outcome == "ignored"


@pytest.mark.asyncio
async def test_connect_dispatch_ignores_unknown_account(dispatcher):
    result = await dispatcher.route_connect(
        decode_event(
            stripe_event(
                "invoice.paid",
                {"id": "in_1", "customer": "cus_1", "amount_paid": 4900},
                account="acct_unknown",
            )
        )
    )

    assert result.outcome == "ignored"
    assert result.reason == "unknown connected account"


@pytest.mark.asyncio
async def test_connect_account_updated_syncs_capabilities(
    db_session, make_agency, dispatcher, notifier
):
    agency = await make_agency(connect_account_ref="acct_1")
    payload = json.dumps(
        stripe_event(
            "account.updated",
            {"id": "acct_1", "charges_enabled": True, "payouts_enabled": True},
            account="acct_1",
        )
    ).encode()

    result = await dispatcher.dispatch_connect(payload, sign_payload(payload, CONNECT_SECRET))

    assert result.outcome == "handled"
    await db_session.refresh(agency)
    assert agency.charges_enabled is True
    assert agency.payouts_enabled is True
    assert agency.onboarding_complete is True
    recipient, kind, _ = notifier.notify.await_args.args
    assert recipient == agency.owner_email
    assert kind is NotificationKind.AGENCY_CONNECT_READY


@pytest.mark.asyncio
async def test_connect_dispatch_routes_to_agency_client(
    db_session, make_agency, make_client, dispatcher, provisioning
):
    agency = await make_agency(connect_account_ref="acct_1")
    client = await make_client(agency, subscription_status="trial_expired", status="suspended")

    result = await dispatcher.route_connect(
        decode_event(
            stripe_event(
                "invoice.payment_succeeded",
                {
                    "id": "in_1",
                    "customer": client.connect_customer_ref,
                    "amount_paid": 4900,
                },
                account="acct_1",
            )
        )
    )

    assert result.outcome == "handled"
    await db_session.refresh(client)
    assert client.subscription_status == "active"
    provisioning.enable_resource.assert_awaited_once_with(client.resource_id)


@pytest.mark.asyncio
async def test_unexpected_handler_error_propagates(make_agency, dispatcher):
    agency = await make_agency()
    event = decode_event(
        stripe_event(
            "checkout.session.completed",
            {"id": "cs_1", "customer": "cus_a", "metadata": {"agency_id": str(agency.id)}},
        )
    )

    async def broken(_payload):
        raise RuntimeError("database unavailable")

    with pytest.raises(RuntimeError):
        await dispatcher._run("platform", event, {type(event.payload): broken})
