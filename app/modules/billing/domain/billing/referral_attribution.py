"""Referral program: signup attribution, custom codes and the referral dashboard."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agency import Agency, AgencySubscriptionStatus
from app.models.commission import CommissionLedgerEntry
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    InvalidReferralCode,
    ReferralCodeConflict,
    ReferralCodeLocked,
    ResourceNotFoundError,
)

from . import tenant_store
from .billing_shared import logger, utcnow

REFERRAL_CODE_MIN_LENGTH = 3
REFERRAL_CODE_MAX_LENGTH = 30
RECENT_COMMISSIONS_LIMIT = 50

_DISALLOWED_CODE_CHARS = re.compile(r"[^a-z0-9-]")


def sanitize_referral_code(raw: Optional[str]) -> str:
    """Lowercase, keep [a-z0-9-], cap at 30 chars; at least 3 must remain."""
    code = _DISALLOWED_CODE_CHARS.sub("", (raw or "").strip().lower())
    code = code[:REFERRAL_CODE_MAX_LENGTH]
    if len(code) < REFERRAL_CODE_MIN_LENGTH:
        raise InvalidReferralCode(
            "Referral code must be at least 3 characters (letters, numbers, hyphens only)"
        )
    return code


def referral_link(code: str) -> str:
    return f"https://{get_settings().PLATFORM_DOMAIN}/signup?ref={code}"


async def _require_agency(db: AsyncSession, agency_id: UUID) -> Agency:
    agency = await tenant_store.get_agency(db, agency_id)
    if agency is None:
        raise ResourceNotFoundError(
            "Agency not found", details={"agency_id": str(agency_id)}
        )
    return agency


async def attribute_referral(
    db: AsyncSession, agency_id: UUID, raw_code: Optional[str]
) -> Agency:
    """
    Record which agency referred `agency_id`. Write-once: repeating the same
    attribution is a no-op, a different one is rejected. Self-referral is
    rejected here so it can never reach the commission ledger.
    """
    agency = await _require_agency(db, agency_id)
    code = sanitize_referral_code(raw_code)

    if agency.referred_by:
        if agency.referred_by == code:
            return agency
        raise InvalidReferralCode(
            "Referral has already been attributed for this agency",
            details={"agency_id": str(agency.id)},
        )

    if code == agency.referral_code:
        raise InvalidReferralCode("An agency cannot refer itself")

    referrer = await tenant_store.find_agency_by_referral_code(db, code)
    if referrer is None:
        raise InvalidReferralCode(
            "Unknown referral code", details={"referral_code": code}
        )
    if referrer.id == agency.id:
        raise InvalidReferralCode("An agency cannot refer itself")

    agency.referred_by = referrer.referral_code
    await db.commit()
    logger.info(
        "referral_attributed",
        agency_id=str(agency.id),
        referrer_agency_id=str(referrer.id),
    )
    return agency


async def update_referral_code(
    db: AsyncSession, agency_id: UUID, raw_code: Optional[str]
) -> dict[str, Any]:
    """
    Replace the agency's public referral code.

    Referred agencies store the code string and their attribution is write-once,
    so a code that has already been signed up with cannot be renamed.
    """
    agency = await _require_agency(db, agency_id)
    code = sanitize_referral_code(raw_code)
    previous = agency.referral_code

    if code == previous:
        return {"referral_code": code, "referral_link": referral_link(code)}
    if agency.referred_by and code == agency.referred_by:
        raise InvalidReferralCode("Referral code cannot match the code you signed up with")

    taken = await db.scalar(
        select(Agency.id).where(Agency.referral_code == code, Agency.id != agency.id)
    )
    if taken is not None:
        raise ReferralCodeConflict(code)

    referred_count = await db.scalar(
        select(func.count()).select_from(Agency).where(Agency.referred_by == previous)
    )
    if referred_count:
        raise ReferralCodeLocked(previous, int(referred_count))

    agency.referral_code = code
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ReferralCodeConflict(code) from exc

    logger.info(
        "referral_code_updated",
        agency_id=str(agency_id),
        previous_code=previous,
        referral_code=code,
    )
    return {"referral_code": code, "referral_link": referral_link(code)}


def _start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def referral_dashboard(db: AsyncSession, agency_id: UUID) -> dict[str, Any]:
    agency = await _require_agency(db, agency_id)

    referrals = (
        await db.scalars(
            select(Agency)
            .where(Agency.referred_by == agency.referral_code)
            .order_by(Agency.created_at.desc())
        )
    ).all()
    active_referrals = sum(
        1
        for referred in referrals
        if referred.subscription_status
        in {AgencySubscriptionStatus.ACTIVE.value, AgencySubscriptionStatus.TRIAL.value}
    )

    this_month = await db.scalar(
        select(func.coalesce(func.sum(CommissionLedgerEntry.commission_amount_cents), 0))
        .where(
            CommissionLedgerEntry.referrer_agency_id == agency.id,
            CommissionLedgerEntry.created_at >= _start_of_month(utcnow()),
        )
    )

    names = {referred.id: referred.name for referred in referrals}
    commissions = (
        await db.scalars(
            select(CommissionLedgerEntry)
            .where(CommissionLedgerEntry.referrer_agency_id == agency.id)
            .order_by(CommissionLedgerEntry.created_at.desc())
            .limit(RECENT_COMMISSIONS_LIMIT)
        )
    ).all()

    return {
        "referral_code": agency.referral_code,
        "referral_link": referral_link(agency.referral_code),
        "can_receive_payouts": bool(agency.connect_account_ref),
        "stats": {
            "total_referrals": len(referrals),
            "active_referrals": active_referrals,
            "lifetime_earnings_cents": agency.referral_earnings_cents_lifetime,
            "available_balance_cents": agency.referral_balance_cents,
            "this_month_earnings_cents": int(this_month or 0),
        },
        "referrals": [
            {
                "id": str(referred.id),
                "name": referred.name,
                "subscription_status": referred.subscription_status,
                "plan_type": referred.plan_type,
                "created_at": referred.created_at,
            }
            for referred in referrals
        ],
        "commissions": [
            {
                "id": str(entry.id),
                "referred_agency_id": str(entry.referred_agency_id),
                "referred_agency_name": names.get(entry.referred_agency_id),
                "source_invoice_ref": entry.source_invoice_ref,
                "commission_amount_cents": entry.commission_amount_cents,
                "status": entry.status,
                "created_at": entry.created_at,
                "transferred_at": entry.transferred_at,
            }
            for entry in commissions
        ],
    }
