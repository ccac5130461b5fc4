"""Subscription health from the consecutive-failure counter."""

import logging
from enum import Enum
from typing import Optional

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DISABLED = "disabled"


def health_status(consecutive_failures: int, is_active: bool = True, settings: Optional[Settings] = None) -> HealthStatus:
    settings = settings or get_settings()
    if not is_active:
        return HealthStatus.DISABLED
    failures = consecutive_failures or 0
    if failures >= settings.webhook_health_unhealthy_after:
        return HealthStatus.UNHEALTHY
    if failures >= settings.webhook_health_degraded_after:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


class HealthTracker:
    """Reacts to counter changes: logs band transitions and applies auto-disable."""

    def __init__(self, registry, settings: Optional[Settings] = None):
        self.registry = registry
        self.settings = settings or get_settings()

    def status(self, consecutive_failures: int, is_active: bool = True) -> HealthStatus:
        return health_status(consecutive_failures, is_active, self.settings)

    async def observe(self, webhook_id: str, previous: int, current: int) -> HealthStatus:
        """Called after the counter moved from ``previous`` to ``current``."""
        before = self.status(previous)
        after = self.status(current)
        if after != before:
            if after == HealthStatus.HEALTHY:
                logger.info("Webhook %s recovered after %d failures", webhook_id, previous)
            else:
                logger.warning("Webhook %s is %s (%d consecutive failures)", webhook_id, after.value, current)

        if self.settings.webhook_auto_disable and current >= self.settings.webhook_auto_disable_after:
            await self.registry.deactivate(webhook_id, f"Auto-disabled after {current} consecutive failures")
            return HealthStatus.DISABLED
        return after
