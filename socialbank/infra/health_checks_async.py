# socialbank/infra/health_checks_async.py
from __future__ import annotations
import time
from enum import Enum
from typing import Any, Dict

from socialbank.infra.db_async import db_conn
from socialbank.infra.logging_config import get_logger
from socialbank.infra.schema_validator import get_schema_info

logger = get_logger(__name__)

_REQUIRED_TABLES = ("dialogue_sessions", "processed_messages", "chat_users", "chat_user_logins")


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
        """Return a dict with 'status', 'details' and optionally 'error'."""
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Check database connectivity and that the dialogue tables exist"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.time()

        try:
            async with db_conn() as conn:
                missing = [
                    table for table in _REQUIRED_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }

        if missing:
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Missing required tables",
                "error": f"Missing: {', '.join(missing)}",
            }

        duration = time.time() - start
        if duration > 1.0:
            return {
                "status": HealthStatus.DEGRADED,
                "details": f"Slow database response: {duration:.3f}s",
                "response_time": duration,
            }

        return {"status": HealthStatus.HEALTHY, "details": "Database operational", "response_time": duration}


class AsyncSessionActivityCheck(AsyncHealthCheck):
    """Report active dialogue sessions per channel"""

    def __init__(self):
        super().__init__("sessions", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            async with db_conn() as conn:
                rows = await conn.fetch(
                    """
                    SELECT channel, COUNT(*) AS active
                      FROM dialogue_sessions
                     WHERE status = 'active' AND expires_at > now()
                     GROUP BY channel
                    """
                )
        except Exception as exc:
            logger.error("Session activity check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Session activity check failed",
                "error": str(exc)[:200],
            }

        return {
            "status": HealthStatus.HEALTHY,
            "details": "Session store operational",
            "active_sessions": {row["channel"]: row["active"] for row in rows},
        }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self):
        self.checks: list[AsyncHealthCheck] = [
            AsyncDatabaseHealthCheck(),
            AsyncSessionActivityCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True) -> Dict[str, Any]:
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
            logger.warning(f"Schema info unavailable: {exc}")
            schema_info = {"initialized": None}

        return {
            "status": overall_status.value,
            "checks": results,
            "schema": schema_info,
            "timestamp": time.time(),
        }


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    return _async_health_checker
