"""
Error Governance

Turns any exception that reaches the API boundary into one JSON shape,
`{"error": code, "message": ..., "details": {...}}`, with the status code
carried by the exception. Unhandled exceptions become a sanitized 500.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import get_settings
from app.shared.core.exceptions import VoiceConnectException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Codes whose message and details are safe to return verbatim in production.
SAFE_CODES = {
    "signature_invalid",
    "not_found",
    "invalid_referral_code",
    "referral_code_conflict",
    "referral_code_locked",
    "payout_destination_missing",
    "payout_below_minimum",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    error_id = error_id or str(uuid4())
    is_prod = get_settings().is_production

    if isinstance(exc, VoiceConnectException):
        app_exc = exc
    elif isinstance(exc, ValueError):
        app_exc = VoiceConnectException(
            message="Invalid request parameters" if is_prod else str(exc),
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        app_exc = VoiceConnectException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.error(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
            exc_info=exc,
        )

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    log = logger.error if app_exc.status_code >= 500 else logger.warning
    log(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    message = app_exc.message
    details: Dict[str, Any] = app_exc.details
    if is_prod and app_exc.code not in SAFE_CODES:
        message = "An error occurred while processing your request"
        details = {}

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": app_exc.code,
            "message": message,
            "details": details,
            "error_id": error_id,
        },
    )
