"""Queries and storage-level primitives over agencies, clients and the ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.agency import Agency
from app.models.client import Client, ClientStatus, ClientSubscriptionStatus
from app.models.subscription_event import AgencySubscriptionEvent

from .billing_shared import logger


def parse_uuid(value: Any) -> Optional[UUID]:
    if isinstance(value, UUID):
        return value
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


async def get_agency(
    db: AsyncSession, agency_id: UUID, *, for_update: bool = False
) -> Optional[Agency]:
    stmt = select(Agency).where(Agency.id == agency_id)
    if for_update:
        # Row lock on Postgres; SQLite ignores FOR UPDATE
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_agency_by_platform_customer(
    db: AsyncSession, customer_ref: Optional[str]
) -> Optional[Agency]:
    if not customer_ref:
        return None
    result = await db.execute(
        select(Agency).where(Agency.platform_customer_ref == customer_ref).limit(1)
    )
    return result.scalar_one_or_none()


async def find_agency_by_platform_subscription(
    db: AsyncSession, subscription_ref: Optional[str]
) -> Optional[Agency]:
    if not subscription_ref:
        return None
    result = await db.execute(
        select(Agency)
        .where(Agency.platform_subscription_ref == subscription_ref)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_agency_by_referral_code(
    db: AsyncSession, referral_code: Optional[str]
) -> Optional[Agency]:
    if not referral_code:
        return None
    result = await db.execute(
        select(Agency).where(Agency.referral_code == referral_code)
    )
    return result.scalar_one_or_none()


async def find_agency_by_connect_account(
    db: AsyncSession, account_ref: Optional[str]
) -> Optional[Agency]:
    if not account_ref:
        return None
    result = await db.execute(
        select(Agency).where(Agency.connect_account_ref == account_ref)
    )
    return result.scalar_one_or_none()


async def get_client(
    db: AsyncSession, client_id: UUID, *, agency_id: Optional[UUID] = None
) -> Optional[Client]:
    stmt = select(Client).where(Client.id == client_id)
    if agency_id is not None:
        stmt = stmt.where(Client.agency_id == agency_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_client_by_connect_customer(
    db: AsyncSession, agency_id: UUID, customer_ref: Optional[str]
) -> Optional[Client]:
    """Customer refs are only unique inside one agency's connected account."""
    if not customer_ref:
        return None
    result = await db.execute(
        select(Client).where(
            Client.agency_id == agency_id,
            Client.connect_customer_ref == customer_ref,
        )
    )
    return result.scalar_one_or_none()


async def find_client_by_connect_subscription(
    db: AsyncSession, agency_id: UUID, subscription_ref: Optional[str]
) -> Optional[Client]:
    if not subscription_ref:
        return None
    result = await db.execute(
        select(Client)
        .where(
            Client.agency_id == agency_id,
            Client.connect_subscription_ref == subscription_ref,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_expired_trial_ids(db: AsyncSession, now: datetime) -> Sequence[UUID]:
    result = await db.execute(
        select(Client.id)
        .where(
            Client.subscription_status == ClientSubscriptionStatus.TRIAL.value,
            Client.trial_ends_at.is_not(None),
            Client.trial_ends_at < now,
        )
        .order_by(Client.trial_ends_at)
    )
    return result.scalars().all()


async def claim_expired_trial(
    db: AsyncSession, client_id: UUID, now: datetime
) -> bool:
    """
    Test-and-set trial -> trial_expired for one client.

    Only succeeds while the row is still in `trial` with an elapsed trial, so
    a webhook that already moved the client wins and the claim returns False.
    """
    result = await db.execute(
        update(Client)
        .where(
            Client.id == client_id,
            Client.subscription_status == ClientSubscriptionStatus.TRIAL.value,
            Client.trial_ends_at < now,
        )
        .values(
            subscription_status=ClientSubscriptionStatus.TRIAL_EXPIRED.value,
            status=ClientStatus.SUSPENDED.value,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def increment_referral_balance(
    db: AsyncSession, agency_id: UUID, amount_cents: int
) -> None:
    """Atomic in-database increment of lifetime earnings and balance."""
    await db.execute(
        update(Agency)
        .where(Agency.id == agency_id)
        .values(
            referral_earnings_cents_lifetime=Agency.referral_earnings_cents_lifetime
            + amount_cents,
            referral_balance_cents=Agency.referral_balance_cents + amount_cents,
        )
        .execution_options(synchronize_session="fetch")
    )


async def record_agency_event(
    db: AsyncSession,
    agency_id: UUID,
    event_type: str,
    external_ref: str,
    *,
    amount_cents: Optional[int] = None,
    details: Optional[dict[str, Any]] = None,
) -> bool:
    """
    Append to the agency subscription event log inside the caller's transaction.

    A row with the same (agency, event_type, external_ref) is left untouched
    and False is returned, which is how redelivery is told apart.
    """
    dialect = db.get_bind().dialect.name
    values = {
        "agency_id": agency_id,
        "event_type": event_type,
        "external_ref": external_ref,
        "amount_cents": amount_cents,
        "details": details or {},
    }
    if dialect == "postgresql":
        stmt: Any = pg_insert(AgencySubscriptionEvent).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(AgencySubscriptionEvent).values(**values)
    else:
        existing = await db.scalar(
            select(AgencySubscriptionEvent.id).where(
                AgencySubscriptionEvent.agency_id == agency_id,
                AgencySubscriptionEvent.event_type == event_type,
                AgencySubscriptionEvent.external_ref == external_ref,
            )
        )
        if existing is not None:
            return False
        db.add(AgencySubscriptionEvent(**values))
        return True

    result = await db.execute(
        stmt.on_conflict_do_nothing(
            index_elements=["agency_id", "event_type", "external_ref"]
        )
    )
    inserted = result.rowcount == 1
    if not inserted:
        logger.info(
            "agency_subscription_event_redelivered",
            agency_id=str(agency_id),
            event_type=event_type,
            external_ref=external_ref,
        )
    return inserted
