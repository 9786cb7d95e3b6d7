"""
Typed billing events decoded from Stripe webhook bodies.

Every verified body is decoded into exactly one payload variant before any
handler sees it. Unknown types and known types with a malformed object both
decode to `UnrecognizedEvent`, which handlers always acknowledge and ignore.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

from .billing_shared import from_unix


class MalformedEventError(ValueError):
    """A known event type whose object is missing a required field."""


@dataclass(frozen=True)
class CheckoutCompleted:
    session_ref: str
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionChanged:
    subscription_ref: str
    customer_ref: Optional[str]
    status: str
    trial_end: Optional[datetime]
    metadata: dict[str, str] = field(default_factory=dict)
    # True for customer.subscription.created
    created: bool = False


@dataclass(frozen=True)
class SubscriptionDeleted:
    subscription_ref: str
    customer_ref: Optional[str]


@dataclass(frozen=True)
class TrialWillEnd:
    subscription_ref: str
    customer_ref: Optional[str]
    trial_end: Optional[datetime]


@dataclass(frozen=True)
class InvoicePaid:
    invoice_ref: str
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    amount_paid_cents: int
    hosted_invoice_url: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    invoice_ref: str
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    amount_due_cents: int
    hosted_invoice_url: Optional[str] = None


@dataclass(frozen=True)
class AccountUpdated:
    account_ref: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


@dataclass(frozen=True)
class UnrecognizedEvent:
    event_type: str
    reason: str


EventPayload = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    TrialWillEnd,
    InvoicePaid,
    InvoicePaymentFailed,
    AccountUpdated,
    UnrecognizedEvent,
]


@dataclass(frozen=True)
class BillingEvent:
    event_id: Optional[str]
    event_type: str
    # Connected account the event belongs to; None for platform events
    account_ref: Optional[str]
    created: Optional[datetime]
    payload: EventPayload


def _ref(value: Any) -> Optional[str]:
    """Stripe fields hold either an id or an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        inner = value.get("id")
        return inner if isinstance(inner, str) and inner else None
    return None


def _required_ref(obj: dict[str, Any], key: str) -> str:
    value = _ref(obj.get(key))
    if value is None:
        raise MalformedEventError(f"missing {key}")
    return value


def _metadata(obj: dict[str, Any]) -> dict[str, str]:
    raw = obj.get("metadata")
    if not isinstance(raw, dict):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _cents(obj: dict[str, Any], key: str) -> int:
    value = obj.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventError(f"{key} is not an integer amount")
    return value


def _invoice_subscription_ref(obj: dict[str, Any]) -> Optional[str]:
    ref = _ref(obj.get("subscription"))
    if ref:
        return ref
    # Newer API versions nest it under parent.subscription_details
    parent = obj.get("parent")
    if isinstance(parent, dict):
        details = parent.get("subscription_details")
        if isinstance(details, dict):
            return _ref(details.get("subscription"))
    return None


def _decode_checkout(obj: dict[str, Any], _event_type: str) -> EventPayload:
    return CheckoutCompleted(
        session_ref=_required_ref(obj, "id"),
        customer_ref=_ref(obj.get("customer")),
        subscription_ref=_ref(obj.get("subscription")),
        metadata=_metadata(obj),
    )


def _decode_subscription(obj: dict[str, Any], event_type: str) -> EventPayload:
    status = obj.get("status")
    if not isinstance(status, str) or not status:
        raise MalformedEventError("missing status")
    return SubscriptionChanged(
        subscription_ref=_required_ref(obj, "id"),
        customer_ref=_ref(obj.get("customer")),
        status=status,
        trial_end=from_unix(obj.get("trial_end")),
        metadata=_metadata(obj),
        created=event_type == "customer.subscription.created",
    )


def _decode_subscription_deleted(obj: dict[str, Any], _event_type: str) -> EventPayload:
    return SubscriptionDeleted(
        subscription_ref=_required_ref(obj, "id"),
        customer_ref=_ref(obj.get("customer")),
    )


def _decode_trial_will_end(obj: dict[str, Any], _event_type: str) -> EventPayload:
    return TrialWillEnd(
        subscription_ref=_required_ref(obj, "id"),
        customer_ref=_ref(obj.get("customer")),
        trial_end=from_unix(obj.get("trial_end")),
    )


def _decode_invoice_paid(obj: dict[str, Any], _event_type: str) -> EventPayload:
    return InvoicePaid(
        invoice_ref=_required_ref(obj, "id"),
        customer_ref=_ref(obj.get("customer")),
        subscription_ref=_invoice_subscription_ref(obj),
        amount_paid_cents=_cents(obj, "amount_paid"),
        hosted_invoice_url=obj.get("hosted_invoice_url"),
    )


def _decode_invoice_failed(obj: dict[str, Any], _event_type: str) -> EventPayload:
    return InvoicePaymentFailed(
        invoice_ref=_required_ref(obj, "id"),
        customer_ref=_ref(obj.get("customer")),
        subscription_ref=_invoice_subscription_ref(obj),
        amount_due_cents=_cents(obj, "amount_due"),
        hosted_invoice_url=obj.get("hosted_invoice_url"),
    )


def _decode_account(obj: dict[str, Any], _event_type: str) -> EventPayload:
    return AccountUpdated(
        account_ref=_required_ref(obj, "id"),
        charges_enabled=bool(obj.get("charges_enabled")),
        payouts_enabled=bool(obj.get("payouts_enabled")),
        details_submitted=bool(obj.get("details_submitted")),
    )


_DECODERS: dict[str, Callable[[dict[str, Any], str], EventPayload]] = {
    "checkout.session.completed": _decode_checkout,
    "customer.subscription.created": _decode_subscription,
    "customer.subscription.updated": _decode_subscription,
    "customer.subscription.deleted": _decode_subscription_deleted,
    "customer.subscription.trial_will_end": _decode_trial_will_end,
    "invoice.payment_succeeded": _decode_invoice_paid,
    "invoice.paid": _decode_invoice_paid,
    "invoice.payment_failed": _decode_invoice_failed,
    "account.updated": _decode_account,
}


def decode_event(raw: dict[str, Any]) -> BillingEvent:
    """Decode a verified Stripe event body into a typed envelope."""
    event_type = raw.get("type")
    if not isinstance(event_type, str):
        event_type = ""

    event_id = raw.get("id") if isinstance(raw.get("id"), str) else None
    account_ref = raw.get("account") if isinstance(raw.get("account"), str) else None
    created = from_unix(raw.get("created"))

    decoder = _DECODERS.get(event_type)
    if decoder is None:
        payload: EventPayload = UnrecognizedEvent(event_type, "unhandled event type")
    else:
        data = raw.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            payload = UnrecognizedEvent(event_type, "missing data.object")
        else:
            try:
                payload = decoder(obj, event_type)
            except MalformedEventError as exc:
                payload = UnrecognizedEvent(event_type, f"malformed: {exc}")

    return BillingEvent(
        event_id=event_id,
        event_type=event_type,
        account_ref=account_ref,
        created=created,
        payload=payload,
    )
