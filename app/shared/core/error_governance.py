"""
Unified Error Governance

Centrally handles exception classification, structured logging and
metrics so every failure leaving the API has the same envelope.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import get_settings
from app.shared.core.exceptions import RateLimitExceededError, ReconcilerException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Codes whose message and details are safe to return in production.
SAFE_CODES = {
    "security_error",
    "invalid_signature",
    "missing_signature",
    "unsupported_media_type",
    "payload_too_large",
    "invalid_payload",
    "rate_limited",
    "not_found",
    "auth_error",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())
    is_prod = get_settings().is_production

    if isinstance(exc, ReconcilerException):
        app_exc = exc
        if is_prod and app_exc.code not in SAFE_CODES:
            app_exc.message = "An error occurred while processing your request"
    elif isinstance(exc, ValueError):
        msg = "Invalid request parameters" if is_prod else str(exc)
        app_exc = ReconcilerException(message=msg, code="value_error", status_code=400)
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Always sanitize unhandled exceptions to avoid leaking secrets via message bodies.
        app_exc = ReconcilerException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    log = logger.warning if app_exc.status_code < 500 else logger.error
    log(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    response_details: Optional[Dict[str, Any]] = app_exc.details
    if is_prod and app_exc.code not in SAFE_CODES:
        response_details = None

    headers: Dict[str, str] = {}
    if isinstance(app_exc, RateLimitExceededError):
        headers["Retry-After"] = str(app_exc.retry_after)

    return JSONResponse(
        status_code=app_exc.status_code,
        content={
            "error": {
                "message": app_exc.message,
                "code": app_exc.code,
                "id": error_id,
                "details": response_details if response_details else None,
            }
        },
        headers=headers or None,
    )
