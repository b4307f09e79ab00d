"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Warning and recipient storage (ping through the repositories)
    • Mobile push provider configuration (Expo endpoint)
    • Web push configuration (VAPID keys)
    • Dispatch backlog (background dispatches in flight)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings
from backend.app.notifications.models import ChannelKind

if TYPE_CHECKING:
    from backend.app.services import Services

logger = logging.getLogger(__name__)

DISPATCH_BACKLOG_WARN = 100


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


async def check_storage(services: "Services") -> ComponentHealth:
    """Ping the warning repository and the recipient directory."""
    comp = ComponentHealth(name="storage")
    start = time.monotonic()
    warnings_ok = await services.store.repository.ping()
    recipients_ok = await services.directory.ping()
    comp.details = {
        "backend": services.settings.STORAGE_BACKEND,
        "warnings": "ok" if warnings_ok else "unreachable",
        "recipients": "ok" if recipients_ok else "unreachable",
    }
    if warnings_ok and recipients_ok:
        comp.message = "Storage reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Storage unreachable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_mobile_push(services: "Services") -> ComponentHealth:
    """Mobile push is configured when its dispatcher exists (no provider call)."""
    comp = ComponentHealth(name="mobile_push")
    start = time.monotonic()
    dispatcher = services.dispatchers.get(ChannelKind.MOBILE_PUSH)
    if dispatcher is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No mobile push dispatcher"
    else:
        comp.message = "Expo push configured"
        comp.details = {
            "url": getattr(dispatcher, "push_url", None),
            "access_token": bool(getattr(dispatcher, "access_token", None)),
        }
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_web_push(services: "Services") -> ComponentHealth:
    """Web push needs VAPID keys; without them every web push item is transient."""
    comp = ComponentHealth(name="web_push")
    start = time.monotonic()
    dispatcher = services.dispatchers.get(ChannelKind.WEB_PUSH)
    if dispatcher is None or not dispatcher.is_configured:
        comp.status = HealthStatus.DEGRADED
        comp.message = "VAPID keys not configured"
    else:
        comp.message = "VAPID keys configured"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_dispatch(services: "Services") -> ComponentHealth:
    """Background dispatch backlog."""
    comp = ComponentHealth(name="dispatch")
    pending = services.controller.pending_dispatches
    comp.details = {
        "pending": pending,
        "background": services.controller.background,
        "feed_connections": services.feed.connection_count,
    }
    if pending > DISPATCH_BACKLOG_WARN:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{pending} dispatches in flight"
    else:
        comp.message = f"{pending} dispatch(es) in flight"
    return comp


async def run_health_check(services: "Services") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_storage(services),
        check_mobile_push(services),
        check_web_push(services),
        check_dispatch(services),
    ]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
