"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Key-value store connectivity (degraded, never unhealthy: the idempotency
  cache fails open)
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shelfwise.config import FeatureFlags
from shelfwise.core.kv_store import KeyValueStore

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Key-value store connectivity check
    - Overall system health status with the active feature flags
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        kv_store: KeyValueStore,
        flags: FeatureFlags,
    ) -> None:
        """Initialize health check service."""
        self.session_factory = session_factory
        self.kv_store = kv_store
        self.flags = flags

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_kv_store(self) -> Dict[str, Any]:
        """
        Check key-value store connectivity.

        Returns:
            Dict[str, Any]: Store health status

        Raises:
            HealthCheckError: If the store cannot be reached
        """
        try:
            await self.kv_store.ping()
            return {
                "status": "healthy",
                "service": "kv_store",
                "message": "Key-value store connection successful",
            }
        except Exception as e:
            logger.warning("kv_store_health_check_failed", error=str(e))
            raise HealthCheckError(f"Key-value store health check failed: {str(e)}")

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        status = "healthy"

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            status = "unhealthy"

        try:
            checks["kv_store"] = await self.check_kv_store()
        except HealthCheckError as e:
            checks["kv_store"] = {
                "status": "degraded",
                "service": "kv_store",
                "error": str(e),
            }
            if status == "healthy":
                status = "degraded"

        return {
            "status": status,
            "checks": checks,
            "feature_flags": self.flags.model_dump(),
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }
