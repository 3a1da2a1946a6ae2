"""
Health check endpoints for Kubernetes readiness/liveness runners.

Checks:
- Database connectivity
- Redis connectivity (only when a Redis URL is configured)
- Stripe API reachability
- Expiry sweeper heartbeat
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seatpay.config import get_settings
from seatpay.database.connection import get_session_factory
from seatpay.database.models import WorkerHeartbeat

logger = structlog.get_logger(__name__)

SWEEPER_WORKER_NAME = "expiry_sweeper"


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    The sweeper runs as its own process, so its liveness is read from the
    heartbeat row it writes on every tick rather than from in-process state.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        check_stripe_api: bool = True,
    ) -> None:
        self.settings = get_settings()
        self._session_factory = session_factory
        self.check_stripe_api = check_stripe_api

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

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

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if not self.settings.redis_url:
            return {
                "status": "skipped",
                "service": "redis",
                "message": "Redis not configured",
            }

        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if redis_client:
                await redis_client.aclose()

    async def check_stripe(self) -> Dict[str, Any]:
        """
        Check Stripe API reachability.

        Raises:
            HealthCheckError: If Stripe check fails
        """
        try:
            stripe.api_key = self.settings.stripe_secret_key

            # Minimal data transfer
            await asyncio.get_running_loop().run_in_executor(
                None, lambda: stripe.PaymentIntent.list(limit=1)
            )

            return {
                "status": "healthy",
                "service": "stripe",
                "message": "Stripe API connection successful",
                "test_mode": self.settings.is_test_mode,
            }

        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            raise HealthCheckError(f"Stripe health check failed: {str(e)}")

    async def check_sweeper(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Check the expiry sweeper heartbeat is recent.

        Raises:
            HealthCheckError: If no heartbeat exists or it is stale
        """
        now = now or datetime.now(timezone.utc)
        stale_after = timedelta(seconds=self.settings.sweeper_stale_after_seconds)

        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(WorkerHeartbeat).where(WorkerHeartbeat.name == SWEEPER_WORKER_NAME)
                )
                heartbeat = result.scalar_one_or_none()
        except Exception as e:
            logger.error("sweeper_health_check_failed", error=str(e))
            raise HealthCheckError(f"Sweeper health check failed: {str(e)}")

        if heartbeat is None:
            raise HealthCheckError("Sweeper has never reported a heartbeat")

        age = now - heartbeat.last_beat_at
        if age > stale_after:
            logger.warning("sweeper_heartbeat_stale", age_seconds=age.total_seconds())
            raise HealthCheckError(
                f"Sweeper heartbeat is stale ({int(age.total_seconds())}s old)"
            )

        return {
            "status": "healthy",
            "service": "expiry_sweeper",
            "last_beat_at": heartbeat.last_beat_at.isoformat(),
            "details": heartbeat.details or {},
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        runners = {
            "database": self.check_database,
            "redis": self.check_redis,
            "expiry_sweeper": self.check_sweeper,
        }
        if self.check_stripe_api:
            runners["stripe"] = self.check_stripe

        checks: Dict[str, Any] = {}
        all_healthy = True
        for name, run_check in runners.items():
            try:
                checks[name] = await run_check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness endpoint.

        Checks if application is ready to accept traffic.
        """
        return await self.check_all()
