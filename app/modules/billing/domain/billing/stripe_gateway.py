"""Stripe access: webhook signature verification and referral payout transfers."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional, Protocol

import stripe

from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    ConfigurationError,
    PayoutTransferError,
    SignatureInvalidError,
)

from .billing_shared import logger


def verify_webhook(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    *,
    source: str,
) -> dict[str, Any]:
    """
    Verify a Stripe-Signature header against the raw body and return the
    decoded event body. Raises SignatureInvalidError on any failure.
    """
    if not secret:
        logger.error("stripe_webhook_secret_not_configured", source=source)
        raise ConfigurationError(
            f"Webhook secret for {source} events is not configured",
            code="webhook_secret_missing",
        )
    if not signature:
        logger.warning("stripe_webhook_missing_signature", source=source)
        raise SignatureInvalidError("Missing Stripe-Signature header")

    tolerance = get_settings().STRIPE_WEBHOOK_TOLERANCE_SECONDS
    try:
        stripe.Webhook.construct_event(payload, signature, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError:
        logger.warning(
            "stripe_webhook_invalid_signature",
            source=source,
            provided_sig=signature[:16] + "...",
        )
        raise SignatureInvalidError()
    except ValueError:
        logger.warning("stripe_webhook_invalid_json", source=source, payload_len=len(payload))
        raise SignatureInvalidError("Invalid webhook payload")

    body = json.loads(payload)
    if not isinstance(body, dict):
        raise SignatureInvalidError("Invalid webhook payload")
    return body


class PayoutGateway(Protocol):
    async def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        """Move funds to a connected account and return the transfer id."""


class StripePayoutGateway:
    """Referral payouts as Stripe transfers to the agency's connected account."""

    def __init__(self) -> None:
        self.api_key = get_settings().STRIPE_SECRET_KEY
        if not self.api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")

    async def create_transfer(
        self,
        *,
        amount_cents: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        try:
            transfer = await asyncio.to_thread(
                stripe.Transfer.create,
                amount=amount_cents,
                currency=currency,
                destination=destination,
                description="VoiceAI Connect referral commission payout",
                metadata=metadata,
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_transfer_failed",
                destination=destination,
                amount_cents=amount_cents,
                error=str(exc),
            )
            raise PayoutTransferError(
                "Payout transfer was rejected by Stripe",
                details={"stripe_error": getattr(exc, "code", None)},
            ) from exc

        logger.info(
            "stripe_transfer_created",
            transfer_ref=transfer.id,
            destination=destination,
            amount_cents=amount_cents,
        )
        return str(transfer.id)


def get_payout_gateway() -> PayoutGateway:
    """FastAPI dependency; overridden in tests."""
    return StripePayoutGateway()
