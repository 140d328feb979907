"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Alert storage connectivity (SQL database)
    • Rate-limit counters (Redis, only when RATE_LIMIT_BACKEND=redis)
    • Live fanout worker and connected operator sessions
    • Email escalation configuration

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards

Only storage is fatal: without it no alert can be accepted. A stopped
fanout or missing SMTP settings degrade the service but alerts are still
stored and visible through the list endpoints.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.core.cache import ping_redis
from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_database(store) -> ComponentHealth:
    """Round-trip a trivial query through the alert store."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        await store.ping()
        comp.message = "Alert storage reachable"
        comp.details = {"url": settings.DATABASE_URL.split("@")[-1]}
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis() -> ComponentHealth:
    """Check Redis connectivity."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if await ping_redis():
        comp.message = "Rate-limit counters available"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Redis did not answer PING"
    comp.details = {"url": settings.REDIS_URL.split("@")[-1]}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_fanout(fanout) -> ComponentHealth:
    comp = ComponentHealth(name="live_fanout")
    comp.details = {
        "sessions": fanout.session_count(),
        "admins": fanout.session_count("admins"),
        "police": fanout.session_count("police"),
    }
    if fanout.running:
        comp.message = "Dispatch worker running"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Dispatch worker stopped"
    return comp


async def check_email(email) -> ComponentHealth:
    comp = ComponentHealth(name="email")
    comp.details = {"recipients": len(email.recipients)}
    if email.configured:
        comp.message = "SMTP configured"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Email escalation disabled (SMTP or ADMIN_EMAILS not set)"
    return comp


async def run_health_check(controller: Optional[Any] = None) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = []
    if controller is not None:
        checks += [
            check_database(controller.store),
            check_fanout(controller.fanout),
            check_email(controller.email),
        ]
    if settings.RATE_LIMIT_BACKEND.lower() == "redis":
        checks.append(check_redis())

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if controller is None or HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
