"""
Tests for health checks.
"""
from datetime import timedelta
from typing import Any

import pytest

from seatpay.core.store import PaymentRecordStore
from seatpay.database.models import utcnow
from seatpay.monitoring.health import SWEEPER_WORKER_NAME, HealthCheck, HealthCheckError


async def _beat(session_factory: Any, when: Any) -> None:
    async with session_factory() as db:
        await PaymentRecordStore().record_heartbeat(db, SWEEPER_WORKER_NAME, {"expired": 2}, when)
        await db.commit()


@pytest.fixture
def health(session_factory: Any) -> HealthCheck:
    return HealthCheck(session_factory, check_stripe_api=False)


class TestHealthCheck:
    """Test suite for HealthCheck."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database(self, health: HealthCheck) -> None:
        result = await health.check_database()

        assert result["status"] == "healthy"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_skipped_when_unconfigured(self, health: HealthCheck) -> None:
        result = await health.check_redis()

        assert result["status"] == "skipped"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweeper_never_ran(self, health: HealthCheck) -> None:
        with pytest.raises(HealthCheckError, match="never reported"):
            await health.check_sweeper()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweeper_recent_heartbeat(
        self, health: HealthCheck, session_factory: Any
    ) -> None:
        await _beat(session_factory, utcnow())

        result = await health.check_sweeper()

        assert result["status"] == "healthy"
        assert result["details"] == {"expired": 2}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweeper_stale_heartbeat(
        self, health: HealthCheck, session_factory: Any, settings: Any
    ) -> None:
        """Test an old heartbeat marks the sweeper unhealthy."""
        await _beat(
            session_factory,
            utcnow() - timedelta(seconds=settings.sweeper_stale_after_seconds + 5),
        )

        with pytest.raises(HealthCheckError, match="stale"):
            await health.check_sweeper()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_heartbeat_is_upserted(
        self, health: HealthCheck, session_factory: Any
    ) -> None:
        old = utcnow() - timedelta(hours=1)
        await _beat(session_factory, old)
        await _beat(session_factory, utcnow())

        result = await health.check_sweeper()

        assert result["status"] == "healthy"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_check_all(self, health: HealthCheck, session_factory: Any) -> None:
        await _beat(session_factory, utcnow())

        result = await health.check_all()

        assert result["status"] == "healthy"
        assert set(result["checks"]) == {"database", "redis", "expiry_sweeper"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_check(self, session_factory: Any, mocker: Any) -> None:
        listing = mocker.patch("stripe.PaymentIntent.list")
        health = HealthCheck(session_factory)

        result = await health.check_stripe()

        assert result["status"] == "healthy"
        listing.assert_called_once_with(limit=1)
