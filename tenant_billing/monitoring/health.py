"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (when configured)
- Gateway configuration
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

if TYPE_CHECKING:
    from tenant_billing.gateways.registry import GatewayRegistry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for billing dependencies."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: "GatewayRegistry",
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {"status": "disabled", "service": "redis"}
        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    def check_gateways(self) -> Dict[str, Any]:
        """
        Report which registered gateways are configured.

        Raises:
            HealthCheckError: If no gateway is configured at all
        """
        gateways = {
            name: adapter.is_configured() for name, adapter in self.registry.items()
        }
        if not any(gateways.values()):
            raise HealthCheckError("No payment gateway is configured")
        return {"status": "healthy", "service": "gateways", "gateways": gateways}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        try:
            checks["gateways"] = self.check_gateways()
        except HealthCheckError as e:
            checks["gateways"] = {"status": "unhealthy", "service": "gateways", "error": str(e)}
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe. Does not check external dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe. Verifies all dependencies are available."""
        return await self.check_all()
