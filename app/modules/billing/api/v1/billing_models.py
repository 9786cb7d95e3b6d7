from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class WebhookAck(BaseModel):
    received: bool = True
    status: str  # handled, ignored
    reason: Optional[str] = None


class ReferralAttributionRequest(BaseModel):
    referral_code: str = Field(..., min_length=1, max_length=100)


class ReferralAttributionResponse(BaseModel):
    agency_id: str
    referred_by: str


class ReferralCodeUpdate(BaseModel):
    code: str = Field(..., min_length=1, max_length=100)


class ReferralCodeResponse(BaseModel):
    referral_code: str
    referral_link: str


class ReferralStats(BaseModel):
    total_referrals: int
    active_referrals: int
    lifetime_earnings_cents: int
    available_balance_cents: int
    this_month_earnings_cents: int


class ReferredAgencyItem(BaseModel):
    id: str
    name: str
    subscription_status: str
    plan_type: Optional[str] = None
    created_at: Optional[datetime] = None


class CommissionItem(BaseModel):
    id: str
    referred_agency_id: str
    referred_agency_name: Optional[str] = None
    source_invoice_ref: str
    commission_amount_cents: int
    status: str  # pending, transferred
    created_at: Optional[datetime] = None
    transferred_at: Optional[datetime] = None


class ReferralDashboardResponse(BaseModel):
    referral_code: str
    referral_link: str
    can_receive_payouts: bool
    stats: ReferralStats
    referrals: List[ReferredAgencyItem]
    commissions: List[CommissionItem]


class PayoutResponse(BaseModel):
    transferred_amount_cents: int
    transfer_ref: str
    entries_transferred: int


class ClientOutcomeItem(BaseModel):
    client_id: str
    outcome: str
    resource_disabled: bool
    notified: bool


class TrialReconciliationResponse(BaseModel):
    processed_count: int
    candidates: int
    started_at: datetime
    outcomes: List[ClientOutcomeItem]
