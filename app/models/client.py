from datetime import datetime, timezone
from enum import Enum
from typing import Optional, TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid as PG_UUID,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.shared.db.base import Base

if TYPE_CHECKING:
    from app.models.agency import Agency


class ClientSubscriptionStatus(str, Enum):
    """Connect subscription lifecycle of a client."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    # Only the trial reconciliation sweep writes this one.
    TRIAL_EXPIRED = "trial_expired"


class ClientStatus(str, Enum):
    """Operational status; gates the provisioned voice resource."""

    ACTIVE = "active"
    SUSPENDED = "suspended"


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (
        # Customer refs live in the owning agency's connected account namespace
        UniqueConstraint(
            "agency_id", "connect_customer_ref", name="uq_clients_agency_customer"
        ),
        Index(
            "ix_clients_trial_ends_at_trial",
            "trial_ends_at",
            postgresql_where=text("subscription_status = 'trial'"),
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    agency_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))

    # Connect billing
    connect_customer_ref: Mapped[Optional[str]] = mapped_column(String(255))
    connect_subscription_ref: Mapped[Optional[str]] = mapped_column(String(255))
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ClientSubscriptionStatus.TRIAL.value, index=True
    )
    plan_type: Mapped[Optional[str]] = mapped_column(String(50))
    monthly_call_limit: Mapped[Optional[int]] = mapped_column(Integer)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Usage
    calls_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_usage_reset_invoice_ref: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ClientStatus.ACTIVE.value
    )
    resource_id: Mapped[Optional[str]] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    agency: Mapped["Agency"] = relationship(back_populates="clients")

    def __repr__(self) -> str:
        return f"<Client {self.id} {self.subscription_status}/{self.status}>"
