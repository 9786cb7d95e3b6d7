"""
Tests for the trial reconciliation sweep.
"""

from datetime import timedelta

import pytest

from app.modules.billing.domain.billing import tenant_store
from app.modules.billing.domain.billing.billing_shared import utcnow
from app.modules.billing.domain.billing.trial_reconciliation import (
    TrialReconciliationJob,
)
from app.shared.core.exceptions import CollaboratorCallFailed
from app.shared.core.notifications import NotificationKind


@pytest.mark.asyncio
async def test_sweep_expires_only_elapsed_trials(
    db_session, make_agency, make_client, provisioning, notifier
):
    agency = await make_agency()
    elapsed = await make_client(agency, trial_ends_at=utcnow() - timedelta(hours=1))
    running = await make_client(agency, trial_ends_at=utcnow() + timedelta(days=2))
    paying = await make_client(
        agency, subscription_status="active", trial_ends_at=utcnow() - timedelta(days=3)
    )
    no_deadline = await make_client(agency, trial_ends_at=None)

    summary = await TrialReconciliationJob(db_session, provisioning, notifier).run()

    assert summary.candidates == 1
    assert summary.processed_count == 1
    outcome = summary.outcomes[0]
    assert outcome.client_id == str(elapsed.id)
    assert outcome.outcome == "expired"
    assert outcome.resource_disabled is True
    assert outcome.notified is True

    await db_session.refresh(elapsed)
    assert elapsed.subscription_status == "trial_expired"
    assert elapsed.status == "suspended"
    provisioning.disable_resource.assert_awaited_once_with(elapsed.resource_id)
    recipient, kind, data = notifier.notify.await_args.args
    assert recipient == elapsed.email
    assert kind is NotificationKind.CLIENT_TRIAL_EXPIRED
    assert data["agency_name"] == agency.name

    for untouched, expected in ((running, "trial"), (paying, "active"), (no_deadline, "trial")):
        await db_session.refresh(untouched)
        assert untouched.subscription_status == expected
        assert untouched.status == "active"


@pytest.mark.asyncio
async def test_second_sweep_processes_nothing(
    db_session, make_agency, make_client, provisioning, notifier
):
    agency = await make_agency()
    await make_client(agency, trial_ends_at=utcnow() - timedelta(minutes=5))
    await make_client(agency, trial_ends_at=utcnow() - timedelta(days=1))
    job = TrialReconciliationJob(db_session, provisioning, notifier)

    first = await job.run()
    second = await job.run()

    assert first.processed_count == 2
    assert second.processed_count == 0
    assert second.candidates == 0
    assert provisioning.disable_resource.await_count == 2
    assert notifier.notify.await_count == 2


@pytest.mark.asyncio
async def test_claim_loses_to_a_payment_that_landed_first(
    db_session, make_agency, make_client
):
    agency = await make_agency()
    client = await make_client(agency, trial_ends_at=utcnow() - timedelta(hours=2))
    now = utcnow()
    assert await tenant_store.list_expired_trial_ids(db_session, now) == [client.id]

    # Webhook activates the client between the scan and the claim
    client.subscription_status = "active"
    await db_session.commit()

    assert await tenant_store.claim_expired_trial(db_session, client.id, now) is False
    await db_session.commit()
    await db_session.refresh(client)
    assert client.subscription_status == "active"
    assert client.status == "active"


@pytest.mark.asyncio
async def test_collaborator_failures_do_not_undo_expiry(
    db_session, make_agency, make_client, provisioning, notifier
):
    provisioning.disable_resource.side_effect = CollaboratorCallFailed(
        "vapi down", collaborator="provisioning"
    )
    notifier.notify.side_effect = CollaboratorCallFailed(
        "resend down", collaborator="notification"
    )
    agency = await make_agency()
    client = await make_client(agency, trial_ends_at=utcnow() - timedelta(hours=1))

    summary = await TrialReconciliationJob(db_session, provisioning, notifier).run()

    assert summary.processed_count == 1
    assert summary.outcomes[0].resource_disabled is False
    assert summary.outcomes[0].notified is False
    await db_session.refresh(client)
    assert client.subscription_status == "trial_expired"


@pytest.mark.asyncio
async def test_client_without_resource_is_still_expired(
    db_session, make_agency, make_client, provisioning, notifier
):
    agency = await make_agency()
    await make_client(agency, trial_ends_at=utcnow() - timedelta(hours=1), resource_id=None)

    summary = await TrialReconciliationJob(db_session, provisioning, notifier).run()

    assert summary.outcomes[0].resource_disabled is False
    provisioning.disable_resource.assert_not_awaited()


@pytest.mark.asyncio
async def test_summary_serializes_for_the_job_endpoint(
    db_session, make_agency, make_client, provisioning, notifier
):
    agency = await make_agency()
    client = await make_client(agency, trial_ends_at=utcnow() - timedelta(hours=1))
    now = utcnow()

    summary = await TrialReconciliationJob(db_session, provisioning, notifier).run(now)
    body = summary.as_dict()

    assert body["processed_count"] == 1
    assert body["candidates"] == 1
    assert body["started_at"] == now.isoformat()
    assert body["outcomes"] == [
        {
            "client_id": str(client.id),
            "outcome": "expired",
            "resource_disabled": True,
            "notified": True,
        }
    ]
