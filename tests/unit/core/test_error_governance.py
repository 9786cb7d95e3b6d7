import json
from types import SimpleNamespace

import pytest
from starlette.requests import Request

from app.shared.core import error_governance
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import (
    CollaboratorCallFailed,
    DuplicateLedgerEntryError,
    PayoutPreconditionFailed,
    ReferralCodeConflict,
)


def _request(path="/api/v1/referrals/agencies/x/payout"):
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": path,
            "headers": [],
            "query_string": b"",
        }
    )


def _body(response):
    return json.loads(response.body)


@pytest.fixture
def production(monkeypatch):
    monkeypatch.setattr(
        error_governance, "get_settings", lambda: SimpleNamespace(is_production=True)
    )


def test_application_error_keeps_its_status_and_code():
    response = handle_exception(_request(), ReferralCodeConflict("taken"), error_id="err-1")

    assert response.status_code == 409
    assert _body(response) == {
        "error": "referral_code_conflict",
        "message": "This referral code is already taken",
        "details": {"referral_code": "taken"},
        "error_id": "err-1",
    }


def test_duplicate_ledger_entry_is_a_conflict():
    response = handle_exception(_request(), DuplicateLedgerEntryError("in_1"))

    assert response.status_code == 409
    assert _body(response)["error"] == "duplicate_ledger_entry"


def test_unexpected_error_becomes_generic_500():
    response = handle_exception(_request(), RuntimeError("password=hunter2"))

    body = _body(response)
    assert response.status_code == 500
    assert body["error"] == "internal_error"
    assert "hunter2" not in body["message"]
    assert body["error_id"]


def test_value_error_is_a_bad_request():
    response = handle_exception(_request(), ValueError("bad cents"))

    assert response.status_code == 400
    assert _body(response)["message"] == "bad cents"


def test_production_hides_unsafe_details(production):
    response = handle_exception(
        _request(),
        CollaboratorCallFailed(
            "Vapi PATCH failed", collaborator="provisioning", details={"endpoint": "x"}
        ),
    )

    body = _body(response)
    assert response.status_code == 502
    assert body["error"] == "collaborator_call_failed"
    assert body["message"] == "An error occurred while processing your request"
    assert body["details"] == {}


def test_production_keeps_safe_payout_errors(production):
    response = handle_exception(
        _request(),
        PayoutPreconditionFailed(
            "Balance below minimum payout",
            code="payout_below_minimum",
            details={"balance_cents": 500},
        ),
    )

    body = _body(response)
    assert body["message"] == "Balance below minimum payout"
    assert body["details"] == {"balance_cents": 500}
