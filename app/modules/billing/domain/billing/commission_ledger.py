"""
Commission Ledger Engine - referral commissions and payouts

Flow:
1. Agency payment succeeds -> `record_commission` for the referring agency
2. One ledger entry per invoice reference (unique constraint), inserted in
   the same transaction as the referrer's balance increment
3. Admin triggers `pay_out` -> Stripe transfer of the whole balance, every
   pending entry present at lock time is marked transferred
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agency import Agency
from app.models.commission import CommissionLedgerEntry, CommissionStatus
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    DuplicateLedgerEntryError,
    PayoutPreconditionFailed,
    PayoutTransferError,
    ResourceNotFoundError,
)
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import (
    COMMISSION_CENTS_TOTAL,
    COMMISSION_DUPLICATES_TOTAL,
    COMMISSIONS_RECORDED_TOTAL,
    PAYOUTS_TOTAL,
)

from . import tenant_store
from .billing_shared import logger, utcnow
from .stripe_gateway import PayoutGateway, StripePayoutGateway


def compute_commission_cents(payment_amount_cents: int, rate: Decimal) -> int:
    """round(amount x rate), halves rounded away from zero."""
    amount = Decimal(payment_amount_cents) * rate
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def payout_idempotency_key(
    agency_id: UUID, entry_ids: Iterable[UUID], amount_cents: int
) -> str:
    """Stable per settled entry set: a retry reuses it, a later payout never does."""
    digest = hashlib.sha256()
    for entry_id in sorted(str(entry_id) for entry_id in entry_ids):
        digest.update(entry_id.encode())
        digest.update(b",")
    digest.update(str(amount_cents).encode())
    return f"referral-payout-{agency_id}-{digest.hexdigest()[:32]}"


@dataclass(frozen=True)
class PayoutResult:
    transferred_amount_cents: int
    transfer_ref: str
    entries_transferred: int


class CommissionLedger:
    def __init__(
        self,
        db: AsyncSession,
        *,
        rate: Optional[Decimal] = None,
        payout_gateway_factory: Callable[[], PayoutGateway] | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.rate = Decimal(str(rate if rate is not None else settings.REFERRAL_COMMISSION_RATE))
        self.min_payout_cents = settings.REFERRAL_MIN_PAYOUT_CENTS
        self.currency = settings.PAYOUT_CURRENCY
        self._payout_gateway_factory = payout_gateway_factory or StripePayoutGateway

    async def record_commission(
        self,
        referred_agency: Agency,
        invoice_ref: str,
        payment_amount_cents: int,
    ) -> Optional[CommissionLedgerEntry]:
        """
        Record the referral commission for one paid invoice of `referred_agency`.

        Returns the new entry, or None when nothing is owed (no referrer,
        orphaned code, nothing paid). Raises DuplicateLedgerEntryError when
        the invoice already has an entry. Must run after the paying agency's
        own status update has been committed: a failure here rolls back only
        the ledger entry and the balance increment, together.
        """
        referral_code = referred_agency.referred_by
        if not referral_code:
            return None

        referrer = await tenant_store.find_agency_by_referral_code(self.db, referral_code)
        if referrer is None:
            logger.warning(
                "commission_orphaned_referral_code",
                referred_agency_id=str(referred_agency.id),
                referral_code=referral_code,
            )
            return None
        if referrer.id == referred_agency.id:
            logger.warning(
                "commission_self_referral_ignored", agency_id=str(referrer.id)
            )
            return None
        if payment_amount_cents <= 0:
            logger.info(
                "commission_skipped_zero_payment",
                invoice_ref=invoice_ref,
                referred_agency_id=str(referred_agency.id),
            )
            return None

        # Fast path for plain redelivery; the unique constraint closes the race.
        existing = await self.db.scalar(
            select(CommissionLedgerEntry.id).where(
                CommissionLedgerEntry.source_invoice_ref == invoice_ref
            )
        )
        if existing is not None:
            COMMISSION_DUPLICATES_TOTAL.inc()
            raise DuplicateLedgerEntryError(invoice_ref)

        commission_cents = compute_commission_cents(payment_amount_cents, self.rate)
        entry = CommissionLedgerEntry(
            referrer_agency_id=referrer.id,
            referred_agency_id=referred_agency.id,
            source_invoice_ref=invoice_ref,
            payment_amount_cents=payment_amount_cents,
            commission_rate=self.rate,
            commission_amount_cents=commission_cents,
            status=CommissionStatus.PENDING.value,
        )
        self.db.add(entry)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            COMMISSION_DUPLICATES_TOTAL.inc()
            raise DuplicateLedgerEntryError(invoice_ref) from exc

        try:
            await tenant_store.increment_referral_balance(
                self.db, referrer.id, commission_cents
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        COMMISSIONS_RECORDED_TOTAL.inc()
        COMMISSION_CENTS_TOTAL.inc(commission_cents)
        logger.info(
            "commission_recorded",
            invoice_ref=invoice_ref,
            referrer_agency_id=str(referrer.id),
            referred_agency_id=str(referred_agency.id),
            payment_amount_cents=payment_amount_cents,
            commission_amount_cents=commission_cents,
            rate=str(self.rate),
        )
        return entry

    async def pay_out(self, agency_id: UUID, *, actor: str = "admin") -> PayoutResult:
        """
        Transfer the referrer's entire balance to its connected account.

        The agency row is locked for the whole transaction, so a commission
        committing concurrently waits and lands after the payout: it is
        neither zeroed from the balance nor marked transferred.
        """
        agency = await tenant_store.get_agency(self.db, agency_id, for_update=True)
        if agency is None:
            raise ResourceNotFoundError(
                "Agency not found", details={"agency_id": str(agency_id)}
            )

        if not agency.connect_account_ref:
            await self.db.rollback()
            PAYOUTS_TOTAL.labels(outcome="rejected").inc()
            raise PayoutPreconditionFailed(
                "Stripe Connect account required. Complete Stripe onboarding first.",
                code="payout_destination_missing",
            )

        balance = int(agency.referral_balance_cents or 0)
        if balance < self.min_payout_cents:
            await self.db.rollback()
            PAYOUTS_TOTAL.labels(outcome="rejected").inc()
            raise PayoutPreconditionFailed(
                f"Minimum payout is ${self.min_payout_cents / 100:.2f}. "
                f"Current balance: ${balance / 100:.2f}",
                code="payout_below_minimum",
                details={
                    "balance_cents": balance,
                    "minimum_cents": self.min_payout_cents,
                },
            )

        pending_ids = (
            await self.db.scalars(
                select(CommissionLedgerEntry.id).where(
                    CommissionLedgerEntry.referrer_agency_id == agency.id,
                    CommissionLedgerEntry.status == CommissionStatus.PENDING.value,
                )
            )
        ).all()

        gateway = self._payout_gateway_factory()
        try:
            transfer_ref = await gateway.create_transfer(
                amount_cents=balance,
                currency=self.currency,
                destination=agency.connect_account_ref,
                idempotency_key=payout_idempotency_key(agency.id, pending_ids, balance),
                metadata={"agency_id": str(agency.id), "type": "referral_payout"},
            )
        except PayoutTransferError:
            await self.db.rollback()
            PAYOUTS_TOTAL.labels(outcome="failed").inc()
            raise

        now = utcnow()
        await self.db.execute(
            update(Agency)
            .where(Agency.id == agency.id)
            .values(referral_balance_cents=Agency.referral_balance_cents - balance)
            .execution_options(synchronize_session="fetch")
        )
        if pending_ids:
            await self.db.execute(
                update(CommissionLedgerEntry)
                .where(
                    CommissionLedgerEntry.id.in_(pending_ids),
                    CommissionLedgerEntry.status == CommissionStatus.PENDING.value,
                )
                .values(
                    status=CommissionStatus.TRANSFERRED.value,
                    transfer_ref=transfer_ref,
                    transferred_at=now,
                )
                .execution_options(synchronize_session="fetch")
            )
        await self.db.commit()

        PAYOUTS_TOTAL.labels(outcome="transferred").inc()
        audit_log(
            "referral_payout_transferred",
            actor=actor,
            agency_id=str(agency.id),
            details={
                "amount_cents": balance,
                "transfer_ref": transfer_ref,
                "entries": len(pending_ids),
            },
        )
        return PayoutResult(
            transferred_amount_cents=balance,
            transfer_ref=transfer_ref,
            entries_transferred=len(pending_ids),
        )
