"""
Global pytest fixtures for the billing core test suite.

Provides:
- Async database session on a temporary SQLite file
- Recording fakes for the provisioning, notification and payout collaborators
- Agency/client factories
- ASGI test client with dependencies overridden
"""
import os
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import pytest_asyncio

from tests.utils import ADMIN_SECRET, CONNECT_SECRET, CRON_SECRET, PLATFORM_SECRET

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_billing_core"
os.environ["STRIPE_PLATFORM_WEBHOOK_SECRET"] = PLATFORM_SECRET
os.environ["STRIPE_CONNECT_WEBHOOK_SECRET"] = CONNECT_SECRET
os.environ["ADMIN_API_SECRET"] = ADMIN_SECRET
os.environ["CRON_SECRET"] = CRON_SECRET
os.environ["PLATFORM_DOMAIN"] = "voice.test"

import app.models  # noqa: E402,F401

# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Async SQLite engine backed by a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    db_file = tmp_path / f"test_{uuid4().hex}.sqlite"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=False)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(async_engine) -> AsyncGenerator:
    """Create database tables and provide an async session."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from app.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# Collaborator fakes
# ============================================================================

@pytest.fixture
def provisioning() -> AsyncMock:
    fake = AsyncMock()
    fake.create_resource.return_value = "asst_created"
    return fake


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def payout_gateway() -> AsyncMock:
    fake = AsyncMock()
    fake.create_transfer.return_value = "tr_test_123"
    return fake


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_agency(db_session):
    from app.models.agency import Agency

    async def _make(**overrides: Any) -> Agency:
        suffix = uuid4().hex[:8]
        values: dict[str, Any] = {
            "name": f"Agency {suffix}",
            "owner_email": f"owner-{suffix}@agency.test",
            "referral_code": f"agency-{suffix}",
            "subscription_status": "pending",
        }
        values.update(overrides)
        agency = Agency(**values)
        db_session.add(agency)
        await db_session.commit()
        return agency

    return _make


@pytest.fixture
def make_client(db_session):
    from app.models.client import Client

    async def _make(agency, **overrides: Any) -> Client:
        suffix = uuid4().hex[:8]
        values: dict[str, Any] = {
            "agency_id": agency.id,
            "business_name": f"Business {suffix}",
            "email": f"client-{suffix}@business.test",
            "connect_customer_ref": f"cus_{suffix}",
            "subscription_status": "trial",
            "status": "active",
            "resource_id": f"asst_{suffix}",
        }
        values.update(overrides)
        client = Client(**values)
        db_session.add(client)
        await db_session.commit()
        return client

    return _make


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    from app.main import app as billing_app

    return billing_app


@pytest_asyncio.fixture
async def async_client(
    app, db_session, provisioning, notifier, payout_gateway
) -> AsyncGenerator:
    """Async test client sharing the test session and collaborator fakes."""
    from httpx import ASGITransport, AsyncClient

    from app.modules.billing.domain.billing.stripe_gateway import get_payout_gateway
    from app.shared.core.notifications import get_notifier
    from app.shared.core.provisioning import get_provisioning_client
    from app.shared.db.session import get_db

    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_provisioning_client] = lambda: provisioning
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payout_gateway] = lambda: payout_gateway

    # Unexpected errors surface as 500 responses rather than raising in the test
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
