"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 5000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.cache import close_redis
from backend.app.core.config import settings
from backend.app.core.database import close_db, init_db
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Alert services ──
from backend.app.alerts.abuse_guard import AbuseGuard, build_abuse_guard
from backend.app.alerts.channels.email_alert import EmailEscalation
from backend.app.alerts.fanout import NotificationFanout
from backend.app.alerts.lifecycle import AlertLifecycleController
from backend.app.alerts.store import AlertStore

# ── API routers ──
from backend.app.api.v1.emergency import router as emergency_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def configure_services(
    app: FastAPI,
    *,
    store: Optional[AlertStore] = None,
    guard: Optional[AbuseGuard] = None,
    fanout: Optional[NotificationFanout] = None,
    email: Optional[EmailEscalation] = None,
) -> AlertLifecycleController:
    """Wire the alert services onto ``app.state``; unspecified parts use settings."""
    controller = AlertLifecycleController(
        store=store or AlertStore(),
        guard=guard or build_abuse_guard(),
        fanout=fanout or NotificationFanout(),
        email=email or EmailEscalation(),
    )
    app.state.controller = controller
    app.state.fanout = controller.fanout
    return controller


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    await init_db()
    controller = configure_services(app)
    await controller.fanout.start()
    if not controller.email.configured:
        logger.warning("Email escalation disabled: SMTP settings or ADMIN_EMAILS missing")
    yield
    logger.info("Shutting down %s", settings.APP_NAME)
    await controller.fanout.stop()
    await controller.drain()
    await close_db()
    await close_redis()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Campus emergency alert service. Accepts one-tap emergency alerts "
        "from the campus app, rate-limits them per device, stores them, "
        "pushes them live to admin and police dashboards over WebSocket, "
        "emails campus administrators, and tracks each alert through "
        "acknowledgement, investigation and resolution."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (order matters — outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After", "RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(emergency_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "abuse-guard",
            "alert-store",
            "live-fanout",
            "email-escalation",
            "alert-lifecycle",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(getattr(app.state, "controller", None))
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(getattr(app.state, "controller", None))
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
