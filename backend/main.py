"""IncidentDesk — FastAPI application entry point."""

from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import text

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from backend.config import settings
from backend.database import engine, init_db
from backend.errors import register_error_handlers
from backend.logging_config import setup_logging

from backend.api.auth import router as auth_router
from backend.api.incidents import router as incidents_router
from backend.api.users import router as users_router
from backend.api.sla import router as sla_router
from backend.api.analytics import router as analytics_router
from backend.api.dashboard import router as dashboard_router
from backend.api.categories import router as categories_router
from backend.api.websocket import router as websocket_router
from backend.api.websocket import manager as ws_manager
from backend.workers.scheduler import scheduler
from backend.observability.metrics import metrics

logger = logging.getLogger("incidentdesk")

SERVICE = "incidentdesk"
VERSION = "1.0.0"
DEFAULT_JWT_SECRET = "change-me-in-production-incidentdesk"

# Rate limiter
limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_default])


def _startup_checks() -> None:
    """Log warnings for misconfigured or missing settings."""
    startup_errors: list[str] = []

    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        msg = "JWT_SECRET is using the default value — set a strong secret for production"
        logger.warning(f"⚠  {msg}")
        if settings.is_production:
            startup_errors.append(msg)

    if settings.is_production and not settings.cors_origins_list:
        msg = "APP_ENV=production but CORS_ORIGINS is empty"
        logger.warning(f"⚠  {msg}")
        startup_errors.append(msg)

    if settings.is_production and "sqlite" in settings.database_url:
        msg = "APP_ENV=production with SQLite; use PostgreSQL for reliability"
        logger.warning(f"⚠  {msg}")

    if settings.strict_startup_validation and startup_errors:
        raise RuntimeError("Startup validation failed: " + " | ".join(startup_errors))
    if "sqlite" in settings.database_url:
        logger.info("○ Using SQLite — consider PostgreSQL for production workloads")

    # Notification status
    notif = []
    if settings.resend_api_key:
        notif.append("Resend")
    if settings.slack_webhook_url:
        notif.append("Slack")
    if notif:
        logger.info(f"✓ Notifications: {', '.join(notif)}")
    else:
        logger.info("○ No notification providers configured")

    if not settings.sla_sweep_enabled:
        logger.info("○ SLA breach sweep disabled (SLA_SWEEP_ENABLED=false)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    setup_logging(settings.log_level, settings.log_format)
    _startup_checks()

    # Startup
    await init_db()
    logger.info("✦ IncidentDesk API started")
    logger.info(f"  Database: {settings.database_url}")

    if settings.sla_sweep_enabled:
        await scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()
    logger.info("✦ IncidentDesk API shutting down")


app = FastAPI(
    title="IncidentDesk",
    description="IT incident management — lifecycle, SLA tracking, assignment and analytics API",
    version=VERSION,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(app)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request tracing + access log middleware
@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()

    response: Response = await call_next(request)

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    metrics.observe_request(request.url.path, response.status_code, duration_ms)
    logger.info(
        "request completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'; base-uri 'self'"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Routers
app.include_router(auth_router)
app.include_router(incidents_router)
app.include_router(users_router)
app.include_router(sla_router)
app.include_router(analytics_router)
app.include_router(dashboard_router)
app.include_router(categories_router)
app.include_router(websocket_router)


@app.get("/")
async def root():
    return JSONResponse(
        {
            "service": f"{SERVICE}-api",
            "status": "ok",
            "endpoints": {
                "health": "/api/health",
                "incidents": "/api/incidents",
                "sla": "/api/sla",
                "analytics": "/api/analytics",
                "realtime": "/ws/incidents",
                "docs": "/docs",
            },
        }
    )


def _storage_ready() -> bool:
    root = Path(settings.attachment_dir)
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError:
        logger.exception("attachment directory %s is not writable", root)
        return False
    return os.access(root, os.W_OK)


async def _db_ready() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("database readiness check failed")
        return False


@app.get("/api/health")
async def health_check():
    database_ready = await _db_ready()
    status = "healthy" if database_ready else "degraded"

    return {
        "status": status,
        "service": SERVICE,
        "version": VERSION,
        "websocket_connections": ws_manager.connection_count,
        "sla_sweep_active": scheduler.running,
        "database_ready": database_ready,
    }


@app.get("/api/health/live")
async def liveness_check():
    return {"status": "alive", "service": SERVICE}


@app.get("/api/metrics")
async def get_metrics():
    return {
        "service": SERVICE,
        "version": VERSION,
        "metrics": metrics.snapshot(),
    }


@app.get("/api/health/ready")
async def readiness_check(response: Response):
    database_ready = await _db_ready()
    scheduler_ready = scheduler.running or not settings.sla_sweep_enabled
    storage_ready = _storage_ready()
    ready = database_ready and scheduler_ready and storage_ready

    if not ready:
        response.status_code = 503

    return {
        "status": "ready" if ready else "not_ready",
        "checks": {
            "database": database_ready,
            "sla_sweep": scheduler_ready,
            "attachments": storage_ready,
        },
    }
