from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base

if TYPE_CHECKING:
    from app.models.client import Client


class AgencySubscriptionStatus(str, Enum):
    """Platform subscription lifecycle of an agency."""

    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Agency(Base):
    """
    Platform tenant.

    Billed by the platform account and, once onboarded to Connect, a biller
    of its own clients. Carries the referral balance it has earned from
    agencies it referred.
    """

    __tablename__ = "agencies"
    __table_args__ = (
        CheckConstraint(
            "referral_balance_cents >= 0", name="referral_balance_non_negative"
        ),
        CheckConstraint(
            "referral_balance_cents <= referral_earnings_cents_lifetime",
            name="referral_balance_within_earnings",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_email: Mapped[Optional[str]] = mapped_column(String(255))
    slug: Mapped[Optional[str]] = mapped_column(String(100), unique=True)

    # Referral identity
    referral_code: Mapped[str] = mapped_column(
        String(30), nullable=False, unique=True, index=True
    )
    # Another agency's referral code; written at most once
    referred_by: Mapped[Optional[str]] = mapped_column(String(30), index=True)

    # Platform billing
    platform_customer_ref: Mapped[Optional[str]] = mapped_column(
        String(255), index=True
    )
    platform_subscription_ref: Mapped[Optional[str]] = mapped_column(String(255))
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AgencySubscriptionStatus.PENDING.value
    )
    plan_type: Mapped[Optional[str]] = mapped_column(String(50))
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Connect (agency as a payment recipient for its clients)
    connect_account_ref: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, index=True
    )
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    onboarding_complete: Mapped[bool] = mapped_column(Boolean, default=False)

    # Referral economics
    referral_earnings_cents_lifetime: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    referral_balance_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    clients: Mapped[List["Client"]] = relationship(
        back_populates="agency", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Agency {self.id} {self.referral_code} {self.subscription_status}>"
