"""
FastAPI application entry point.

Serves the read-only engagement ops endpoints. The lifecycle itself runs
in the Celery worker and beat processes; this app never mutates state.
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from routers import engagement
from core.config import settings
from core.database import check_db_connection
from core.exceptions import EngagementError, NotFoundError
from core.logging import setup_logging
import logging
import time

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)

# Probed by the orchestrator every few seconds; only logged at debug.
QUIET_PATHS = frozenset({"/v1/engagement/health"})

app = FastAPI(
    title="Engagement Service",
    description="Lifecycle outreach: inactivity check-ins, reminders and weekly reviews",
    version="1.0.0",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)


@app.on_event("startup")
async def report_database_status():
    if check_db_connection():
        logger.info(f"Engagement API started (environment={settings.ENVIRONMENT})")
    else:
        # Keep serving: /health reports the degraded state to the orchestrator.
        logger.error("Engagement API started without database connectivity")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.monotonic()
    response = await call_next(request)
    elapsed_ms = round((time.monotonic() - started) * 1000, 2)

    level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
    logger.log(
        level,
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={
            "extra_fields": {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "process_time_ms": elapsed_ms,
            }
        },
    )
    response.headers["X-Process-Time"] = str(elapsed_ms)
    return response


@app.exception_handler(EngagementError)
async def engagement_error_handler(request: Request, exc: EngagementError):
    """Map domain errors raised by read paths onto HTTP responses."""
    if isinstance(exc, NotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": str(exc), "error_code": "NOT_FOUND"},
        )
    logger.error(f"Engagement error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Engagement data temporarily unavailable"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception: {exc}",
        exc_info=True,
        extra={"extra_fields": {"method": request.method, "path": request.url.path}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


app.include_router(engagement.router)
