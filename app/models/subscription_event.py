from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class AgencySubscriptionEvent(Base):
    """
    Audit trail of platform billing events applied to an agency.
    Redelivery of the same processor object never appends a second row.
    """

    __tablename__ = "agency_subscription_events"
    __table_args__ = (
        UniqueConstraint(
            "agency_id",
            "event_type",
            "external_ref",
            name="uq_agency_subscription_events_dedupe",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    agency_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # checkout_completed, payment_succeeded, payment_failed, subscription_canceled
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # Invoice, session or subscription id the event was about
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[Optional[int]] = mapped_column(BigInteger)
    details: Mapped[Dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
