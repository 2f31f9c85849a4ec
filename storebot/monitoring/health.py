"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (pub/sub channel and product cache)
"""
from typing import Any, Dict

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storebot.config import get_settings
from storebot.database import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the engine's dependencies."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        redis_client: aioredis.Redis | None = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Optional session factory (defaults to the global one)
            redis_client: Optional Redis client; a short-lived one is opened otherwise
        """
        self.settings = get_settings()
        self._session_factory = session_factory
        self._redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
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
        owned = self._redis_client is None
        client = self._redis_client or aioredis.from_url(
            self.settings.redis_url, encoding="utf-8", decode_responses=True
        )
        try:
            await client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e
        finally:
            if owned:
                await client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks and report the overall status."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("redis", self.check_redis)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
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
