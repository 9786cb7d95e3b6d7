"""
Notification Dispatcher - billing emails via Resend

Renders a small set of billing templates and posts them to the Resend API.
Domain code calls `notify(recipient, kind, data)` and never waits on the
outcome beyond logging it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from html import escape
from typing import Any, Callable, Protocol

import httpx
import structlog

from app.shared.core.config import get_settings
from app.shared.core.exceptions import CollaboratorCallFailed
from app.shared.core.http import get_http_client

logger = structlog.get_logger()


class NotificationKind(str, Enum):
    AGENCY_SUBSCRIPTION_CANCELED = "agency_subscription_canceled"
    AGENCY_PAYMENT_FAILED = "agency_payment_failed"
    AGENCY_TRIAL_ENDING = "agency_trial_ending"
    AGENCY_CONNECT_READY = "agency_connect_ready"
    CLIENT_SUBSCRIPTION_ACTIVATED = "client_subscription_activated"
    CLIENT_SUBSCRIPTION_CANCELED = "client_subscription_canceled"
    CLIENT_PAYMENT_FAILED = "client_payment_failed"
    CLIENT_TRIAL_EXPIRED = "client_trial_expired"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str


class NotificationCollaborator(Protocol):
    async def notify(
        self, recipient: str, kind: NotificationKind, data: dict[str, Any]
    ) -> None:
        """Send a templated notification to one recipient."""


def _paragraphs(*lines: str) -> str:
    return "".join(f"<p>{line}</p>" for line in lines if line)


def _button(url: str, label: str) -> str:
    return f'<p><a href="{escape(url, quote=True)}">{escape(label)}</a></p>'


def _agency_canceled(data: dict[str, Any]) -> RenderedEmail:
    settings = get_settings()
    return RenderedEmail(
        subject="VoiceAI Connect Subscription Cancelled",
        html=_paragraphs(
            f"Hi {escape(data.get('agency_name', 'there'))},",
            "Your VoiceAI Connect subscription has been cancelled. "
            "Your clients' AI receptionists will keep their data, "
            "but new signups are paused until you resubscribe.",
        )
        + _button(f"{settings.FRONTEND_URL}/agency/settings", "Reactivate"),
    )


def _agency_payment_failed(data: dict[str, Any]) -> RenderedEmail:
    settings = get_settings()
    update_url = data.get("hosted_invoice_url") or f"{settings.FRONTEND_URL}/agency/settings"
    return RenderedEmail(
        subject="VoiceAI Connect Payment Failed - Action Required",
        html=_paragraphs(
            f"Hi {escape(data.get('agency_name', 'there'))},",
            "We couldn't process your latest payment. "
            "Please update your payment method to avoid service interruption.",
        )
        + _button(update_url, "Update payment method"),
    )


def _agency_trial_ending(data: dict[str, Any]) -> RenderedEmail:
    settings = get_settings()
    days_left = int(data.get("days_left", 0))
    return RenderedEmail(
        subject=f"Your VoiceAI Connect trial ends in {days_left} days",
        html=_paragraphs(
            f"Hi {escape(data.get('agency_name', 'there'))},",
            f"Your free trial ends in {days_left} days. "
            "Your card on file will be charged when the trial ends.",
        )
        + _button(f"{settings.FRONTEND_URL}/agency/settings", "Manage billing"),
    )


def _agency_connect_ready(data: dict[str, Any]) -> RenderedEmail:
    settings = get_settings()
    return RenderedEmail(
        subject="Stripe Connect Setup Complete!",
        html=_paragraphs(
            f"Hi {escape(data.get('agency_name', 'there'))},",
            "Your Stripe account is connected and can now accept client payments.",
        )
        + _button(f"{settings.FRONTEND_URL}/agency/dashboard", "Open dashboard"),
    )


def _client_activated(data: dict[str, Any]) -> RenderedEmail:
    agency_name = escape(data.get("agency_name", "VoiceAI Connect"))
    if data.get("reactivated"):
        body = "Welcome back! Your AI receptionist is active again and answering calls."
    else:
        body = "Your subscription is active. Your AI receptionist is answering calls."
    return RenderedEmail(
        subject=f"{agency_name} - Subscription Activated!",
        html=_paragraphs(f"Hi {escape(data.get('business_name', 'there'))},", body),
    )


def _client_canceled(data: dict[str, Any]) -> RenderedEmail:
    agency_name = escape(data.get("agency_name", "VoiceAI Connect"))
    return RenderedEmail(
        subject=f"{agency_name} - Subscription Cancelled",
        html=_paragraphs(
            f"Hi {escape(data.get('business_name', 'there'))},",
            "Your subscription has been cancelled and your AI receptionist "
            "has stopped answering calls.",
        ),
    )


def _client_payment_failed(data: dict[str, Any]) -> RenderedEmail:
    agency_name = escape(data.get("agency_name", "VoiceAI Connect"))
    html = _paragraphs(
        f"Hi {escape(data.get('business_name', 'there'))},",
        "We couldn't process your latest payment. "
        "Please update your payment method to keep your AI receptionist running.",
    )
    if data.get("hosted_invoice_url"):
        html += _button(data["hosted_invoice_url"], "Pay invoice")
    return RenderedEmail(subject=f"{agency_name} Payment Failed", html=html)


def _client_trial_expired(data: dict[str, Any]) -> RenderedEmail:
    agency_name = escape(data.get("agency_name", "VoiceAI Connect"))
    return RenderedEmail(
        subject=f"{agency_name} - Your Trial Has Ended",
        html=_paragraphs(
            f"Hi {escape(data.get('business_name', 'there'))},",
            "Your free trial has ended and your AI receptionist is paused. "
            "Upgrade to a paid plan to turn it back on.",
        ),
    )


_RENDERERS: dict[NotificationKind, Callable[[dict[str, Any]], RenderedEmail]] = {
    NotificationKind.AGENCY_SUBSCRIPTION_CANCELED: _agency_canceled,
    NotificationKind.AGENCY_PAYMENT_FAILED: _agency_payment_failed,
    NotificationKind.AGENCY_TRIAL_ENDING: _agency_trial_ending,
    NotificationKind.AGENCY_CONNECT_READY: _agency_connect_ready,
    NotificationKind.CLIENT_SUBSCRIPTION_ACTIVATED: _client_activated,
    NotificationKind.CLIENT_SUBSCRIPTION_CANCELED: _client_canceled,
    NotificationKind.CLIENT_PAYMENT_FAILED: _client_payment_failed,
    NotificationKind.CLIENT_TRIAL_EXPIRED: _client_trial_expired,
}


def render_notification(kind: NotificationKind, data: dict[str, Any]) -> RenderedEmail:
    return _RENDERERS[kind](data)


class ResendNotifier:
    """Sends rendered billing emails through the Resend HTTP API."""

    def __init__(self) -> None:
        settings = get_settings()
        self.api_key = settings.RESEND_API_KEY
        self.api_url = settings.RESEND_API_URL
        self.sender = settings.NOTIFICATION_FROM_EMAIL
        self.timeout = settings.OUTBOUND_TIMEOUT_SECONDS

    async def notify(
        self, recipient: str, kind: NotificationKind, data: dict[str, Any]
    ) -> None:
        if not self.api_key:
            raise CollaboratorCallFailed(
                "RESEND_API_KEY not configured", collaborator="notification"
            )

        email = render_notification(kind, data)
        client = get_http_client()
        try:
            response = await client.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "from": self.sender,
                    "to": [recipient],
                    "subject": email.subject,
                    "html": email.html,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CollaboratorCallFailed(
                f"Resend rejected {kind.value}",
                collaborator="notification",
                details={"kind": kind.value, "error": str(exc)},
            ) from exc

        logger.info("notification_sent", kind=kind.value)


def get_notifier() -> NotificationCollaborator:
    """FastAPI dependency; overridden in tests."""
    return ResendNotifier()
