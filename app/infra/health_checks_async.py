# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.infra.db_async import get_pool, pool_stats
from app.infra.logging_config import get_logger
from app.infra.notification_channels import NotificationChannel, get_notification_channel
from app.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

REQUIRED_TABLES = ("users", "crises", "volunteer_profiles", "responses", "ratings")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """
        Perform health check.
        Returns dict with 'status', 'details', and optionally 'error'
        """
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Check database connectivity and that the dispatch tables exist"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                result = await conn.fetchval("SELECT 1")
                if result != 1:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Unexpected query result",
                        "error": f"Expected 1, got {result}"
                    }

                missing_tables = []
                for table in REQUIRED_TABLES:
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None:
                        missing_tables.append(table)

                if missing_tables:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing_tables)}"
                    }

                duration = time.time() - start
                if duration > 1.0:
                    return {
                        "status": HealthStatus.DEGRADED,
                        "details": f"Slow database response: {duration:.3f}s",
                        "response_time": duration
                    }

                return {
                    "status": HealthStatus.HEALTHY,
                    "details": "Database operational",
                    "response_time": duration,
                    "pool": pool_stats(),
                }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200]
            }


class AsyncDispatchActivityHealthCheck(AsyncHealthCheck):
    """Report volunteer availability and recent response activity"""

    def __init__(self):
        super().__init__("dispatch_activity", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                available = await conn.fetchval(
                    "SELECT COUNT(*) FROM volunteer_profiles WHERE availability"
                )
                rows = await conn.fetch(
                    """
                    SELECT status, COUNT(*) AS n
                    FROM responses
                    WHERE updated_at > now() - interval '24 hours'
                    GROUP BY status
                    """
                )

            return {
                "status": HealthStatus.HEALTHY if available else HealthStatus.DEGRADED,
                "details": "Dispatch activity" if available else "No volunteers currently available",
                "available_volunteers": available,
                "responses_24h": {row["status"]: row["n"] for row in rows},
            }

        except Exception as exc:
            logger.error("Dispatch activity health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Dispatch activity check failed",
                "error": str(exc)[:200]
            }


class NotificationChannelHealthCheck(AsyncHealthCheck):
    """Check that the notification channel is configured"""

    def __init__(self, channel: NotificationChannel | None = None):
        super().__init__("notification_channel", critical=False)
        self._channel = channel

    async def check(self) -> Dict[str, Any]:
        channel = self._channel or get_notification_channel()
        if channel.is_configured():
            return {
                "status": HealthStatus.HEALTHY,
                "details": f"Channel '{channel.name}' configured",
            }
        return {
            "status": HealthStatus.DEGRADED,
            "details": f"Channel '{channel.name}' not configured",
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [
            AsyncDatabaseHealthCheck(),
            AsyncDispatchActivityHealthCheck(),
            NotificationChannelHealthCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {
                "status": "healthy" | "degraded" | "unhealthy",
                "checks": {...},
                "schema": {...},
                "timestamp": float
            }
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        try:
            schema_info = await get_schema_info()
        except Exception as exc:
            logger.error("Schema info unavailable", exc_info=True)
            schema_info = {"error": str(exc)[:200]}

        return {
            "status": overall_status.value,
            "checks": results,
            "schema": schema_info,
            "timestamp": time.time()
        }


# Global async health checker instance
_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    """Get the global async health checker"""
    return _async_health_checker
