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
from app.shared.core.exceptions import ReconcilerException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

settings = get_settings()
setup_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    from app.shared.core.http import close_http_client, init_http_client
    from app.shared.db.session import create_all, get_engine

    await init_http_client()

    if not settings.is_production:
        # Production schemas are managed by migrations.
        await create_all()

    from app.modules.billing.domain.jobs.scheduler import BillingJobScheduler

    scheduler = BillingJobScheduler()
    if settings.JOB_SCHEDULER_ENABLED and not settings.TESTING:
        scheduler.start()
    else:
        logger.info("job_scheduler_skipped", testing=settings.TESTING)
    app.state.job_scheduler = scheduler

    yield

    logger.info("app_shutting_down")
    scheduler.stop()
    await close_http_client()
    await get_engine().dispose()
    logger.info("db_engine_disposed")


# Application instance
reconciler_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app: FastAPI = reconciler_app

__all__ = ["app", "reconciler_app", "lifespan"]


@reconciler_app.exception_handler(ReconcilerException)
async def reconciler_exception_handler(
    request: Request, exc: ReconcilerException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@reconciler_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with the standard error envelope."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": None,
                "details": None,
            }
        },
        headers=getattr(exc, "headers", None),
    )


@reconciler_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return sanitized validation errors without echoing request bodies."""

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized: List[Dict[str, Any]] = []
        for err in errors:
            if not isinstance(err, dict):
                continue
            sanitized.append(
                {
                    "loc": [str(part) for part in err.get("loc", ())],
                    "msg": str(err.get("msg", "")),
                    "type": str(err.get("type", "")),
                }
            )
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "Request validation failed",
                "code": "validation_error",
                "id": None,
                "details": {"errors": _sanitize_errors(exc.errors())},
            }
        },
    )


@reconciler_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions with sanitized responses."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    reconciler_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)
register_api_routers(reconciler_app)

# Initialize Prometheus Metrics
Instrumentator().instrument(reconciler_app).expose(reconciler_app)

# Middleware is processed in REVERSE order of addition.
reconciler_app.add_middleware(SecurityHeadersMiddleware)
reconciler_app.add_middleware(RequestIDMiddleware)
