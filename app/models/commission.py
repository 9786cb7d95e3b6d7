from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class CommissionStatus(str, Enum):
    PENDING = "pending"
    TRANSFERRED = "transferred"


class CommissionLedgerEntry(Base):
    """
    Append-only referral commission record.

    One row per paid invoice of a referred agency; `source_invoice_ref` is
    unique so concurrent redeliveries collide in the database. The rate is
    stored with the entry and never looked up again.
    """

    __tablename__ = "commission_ledger_entries"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    referrer_agency_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referred_agency_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_invoice_ref: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    payment_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    commission_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CommissionStatus.PENDING.value, index=True
    )

    transfer_ref: Mapped[Optional[str]] = mapped_column(String(255))
    transferred_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return (
            f"<CommissionLedgerEntry {self.source_invoice_ref} "
            f"{self.commission_amount_cents}c {self.status}>"
        )
