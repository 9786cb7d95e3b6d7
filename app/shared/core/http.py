"""
Async HTTP Client Shared Infrastructure

Keeps a single httpx.AsyncClient for the FastAPI lifespan and the Celery
worker so outbound provisioning and notification calls share one pool.
"""

import inspect
from typing import Optional

import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None


def _build_client(timeout: float) -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(timeout, connect=min(timeout, 3.0)),
        limits=httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": f"voiceconnect-billing/{settings.VERSION}"},
    )


def get_http_client() -> httpx.AsyncClient:
    """
    Returns the global shared httpx.AsyncClient.
    Lazily creates it for workers and scripts that skip the app lifespan.
    """
    global _client
    if _client is None:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = _build_client(get_settings().OUTBOUND_TIMEOUT_SECONDS)
    return _client


async def init_http_client() -> None:
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return

    timeout = get_settings().OUTBOUND_TIMEOUT_SECONDS
    _client = _build_client(timeout)
    logger.info("http_client_initialized", http2=True, timeout_seconds=timeout)


async def close_http_client() -> None:
    """
    Gracefully shuts down the global client, flushing the connection pool.
    """
    global _client
    if not _client:
        return

    close_result = None
    aclose = getattr(_client, "aclose", None)
    if callable(aclose):
        close_result = aclose()
    if inspect.isawaitable(close_result):
        await close_result

    _client = None
    logger.info("http_client_closed")
