from typing import Any

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import Gauge
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from app.shared.db.session import get_db

logger = structlog.get_logger()

SYSTEM_HEALTH = Gauge(
    "voiceconnect_billing_system_health",
    "System health status (1=healthy, 0=unhealthy)",
)

_REQUIRED_API_PREFIXES = {
    "/api/v1/billing",
    "/api/v1/referrals",
}


def _validate_router_registry(routes: list[tuple[Any, str]]) -> None:
    seen_prefixes: set[str] = set()
    for router, prefix in routes:
        if not getattr(router, "routes", None):
            raise RuntimeError("Router registry includes an empty router definition")
        if not prefix.startswith("/"):
            raise RuntimeError(f"Router prefix must start with '/': {prefix!r}")
        if prefix in seen_prefixes:
            raise RuntimeError(f"Duplicate router prefix registered: {prefix}")
        seen_prefixes.add(prefix)

    missing = sorted(_REQUIRED_API_PREFIXES - seen_prefixes)
    if missing:
        raise RuntimeError(
            "Router registry is missing required API prefixes: " + ", ".join(missing)
        )


def register_lifecycle_routes(app: FastAPI, *, app_name: str, version: str) -> None:
    """Register root and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check(db: AsyncSession = Depends(get_db)) -> Any:
        """Liveness plus a database round trip, for load balancers."""
        try:
            await db.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            logger.warning("health_check_database_down", error=str(exc))
            SYSTEM_HEALTH.set(0.0)
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": {"status": "down"}},
            )
        SYSTEM_HEALTH.set(1.0)
        return {"status": "healthy", "database": {"status": "up"}}


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep the app entrypoint focused."""
    from app.modules.billing.api.v1.billing import router as billing_router
    from app.modules.billing.api.v1.referrals import router as referrals_router

    routes = [
        (billing_router, "/api/v1/billing"),
        (referrals_router, "/api/v1/referrals"),
    ]
    _validate_router_registry(routes)
    for router, prefix in routes:
        app.include_router(router, prefix=prefix)
