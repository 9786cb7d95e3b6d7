from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import VoiceConnectException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.db.session import get_engine

settings = get_settings()
setup_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    await init_http_client()

    yield

    logger.info("app_shutting_down")
    await close_http_client()
    await get_engine().dispose()
    logger.info("db_engine_disposed")


voiceconnect_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# uvicorn looks for `app` by default
app: FastAPI = voiceconnect_app

__all__ = ["app", "voiceconnect_app", "lifespan"]


@voiceconnect_app.exception_handler(VoiceConnectException)
async def voiceconnect_exception_handler(
    request: Request, exc: VoiceConnectException
) -> JSONResponse:
    return handle_exception(request, exc)


@voiceconnect_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render FastAPI HTTP exceptions in the same shape as application errors."""
    detail_text = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "http_error", "message": detail_text, "details": {}},
        headers=getattr(exc, "headers", None),
    )


@voiceconnect_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        return [
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "msg": str(error.get("msg", "")),
                "type": str(error.get("type", "")),
            }
            for error in errors
            if isinstance(error, dict)
        ]

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": {"errors": _sanitize_errors(exc.errors())},
        },
    )


@voiceconnect_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return handle_exception(request, exc)


register_lifecycle_routes(
    voiceconnect_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)
register_api_routers(voiceconnect_app)

Instrumentator().instrument(voiceconnect_app).expose(voiceconnect_app)

voiceconnect_app.add_middleware(RequestIDMiddleware)
