import pytest


@pytest.mark.asyncio
async def test_root_and_liveness(async_client):
    root = await async_client.get("/")
    live = await async_client.get("/health/live")

    assert root.status_code == 200
    assert root.json()["status"] == "ok"
    assert live.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_health_checks_database(async_client):
    response = await async_client.get("/health")

    assert response.status_code == 200
    assert response.json()["database"] == {"status": "up"}


@pytest.mark.asyncio
async def test_health_reports_database_down(app, async_client):
    from unittest.mock import AsyncMock

    from app.shared.db.session import get_db

    broken = AsyncMock()
    broken.execute.side_effect = RuntimeError("connection refused")
    app.dependency_overrides[get_db] = lambda: broken

    response = await async_client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_request_id_is_echoed(async_client):
    response = await async_client.get("/health/live", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
