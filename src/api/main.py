"""CookCam Entitlements API: FastAPI application with DB-backed storage."""
from __future__ import annotations

import logging

from src.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException
from fastapi import Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import engine, get_session
from src.db.tables import Base
from src.middleware.request_id import RequestIDMiddleware
from src.services.engine import build_engine
from src.services.errors import EntitlementError
from src.services.scheduler import start_scheduler, stop_scheduler
from config.settings import settings

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Receipts and purchase tokens travel in request bodies
        send_default_pii=False,
        max_request_body_size="never",
    )

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup and start the reconciliation scheduler."""
    from src.startup_checks import validate_settings
    validate_settings()

    # Import all tables so they're registered with Base.metadata
    import src.db.subscription_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    start_scheduler(app.state.entitlements, interval_hours=settings.RECONCILE_INTERVAL_HOURS)

    yield

    logger.info("Shutting down: draining connections...")
    stop_scheduler()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="CookCam Entitlements API",
    version=VERSION,
    description="Store receipt validation, subscription lifecycle and feature entitlements",
    lifespan=lifespan,
)

# Built once per process; routes reach it through request.app.state
app.state.entitlements = build_engine(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID tracing
app.add_middleware(RequestIDMiddleware)


from src.api.subscriptions import router as subscriptions_router  # noqa: E402
app.include_router(subscriptions_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check: validates DB connectivity."""
    try:
        from sqlalchemy import text
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {"status": status, "db": db_status, "version": VERSION}


# --- Structured Error Responses ---

@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: FastAPIRequest, exc: EntitlementError):
    """Store/verification failures: log the detail, show the client the safe message."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    else:
        logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.error,
        "message": exc.public_message,
    })


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(HTTPException)
async def http_error_handler(request: FastAPIRequest, exc: HTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions: never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
