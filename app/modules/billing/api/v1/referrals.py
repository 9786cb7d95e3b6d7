"""
Referral API Endpoints

Provides:
- POST /referrals/agencies/{agency_id}/attribution - record who referred an agency
- PUT /referrals/agencies/{agency_id}/code - choose a custom referral code
- GET /referrals/agencies/{agency_id} - referral dashboard
- POST /referrals/agencies/{agency_id}/payout - pay out the balance (admin secret)
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.modules.billing.api.v1.billing_models import (
    PayoutResponse,
    ReferralAttributionRequest,
    ReferralAttributionResponse,
    ReferralCodeResponse,
    ReferralCodeUpdate,
    ReferralDashboardResponse,
)
from app.modules.billing.api.v1.billing_ops import require_admin_secret
from app.modules.billing.domain.billing.commission_ledger import CommissionLedger
from app.modules.billing.domain.billing.referral_attribution import (
    attribute_referral,
    referral_dashboard,
    update_referral_code,
)
from app.modules.billing.domain.billing.stripe_gateway import (
    PayoutGateway,
    get_payout_gateway,
)
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Referrals"])


@router.post(
    "/agencies/{agency_id}/attribution", response_model=ReferralAttributionResponse
)
async def attribute_agency_referral(
    agency_id: UUID,
    body: ReferralAttributionRequest,
    db: AsyncSession = Depends(get_db),
) -> ReferralAttributionResponse:
    agency = await attribute_referral(db, agency_id, body.referral_code)
    return ReferralAttributionResponse(
        agency_id=str(agency.id), referred_by=agency.referred_by
    )


@router.put("/agencies/{agency_id}/code", response_model=ReferralCodeResponse)
async def set_referral_code(
    agency_id: UUID,
    body: ReferralCodeUpdate,
    db: AsyncSession = Depends(get_db),
) -> ReferralCodeResponse:
    result = await update_referral_code(db, agency_id, body.code)
    return ReferralCodeResponse(**result)


@router.get("/agencies/{agency_id}", response_model=ReferralDashboardResponse)
async def get_referral_dashboard(
    agency_id: UUID, db: AsyncSession = Depends(get_db)
) -> ReferralDashboardResponse:
    return ReferralDashboardResponse(**await referral_dashboard(db, agency_id))


@router.post(
    "/agencies/{agency_id}/payout",
    response_model=PayoutResponse,
    dependencies=[Depends(require_admin_secret)],
)
async def pay_out_referral_balance(
    agency_id: UUID,
    db: AsyncSession = Depends(get_db),
    gateway: PayoutGateway = Depends(get_payout_gateway),
) -> PayoutResponse:
    """Transfer the agency's whole pending referral balance to its connected account."""
    ledger = CommissionLedger(db, payout_gateway_factory=lambda: gateway)
    result = await ledger.pay_out(agency_id, actor="admin_api")
    return PayoutResponse(
        transferred_amount_cents=result.transferred_amount_cents,
        transfer_ref=result.transfer_ref,
        entries_transferred=result.entries_transferred,
    )
