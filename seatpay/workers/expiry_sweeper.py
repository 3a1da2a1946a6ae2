"""
Expiry sweeper background worker.

Every tick:
1. Retries captures for accepted holds that did not go through
2. Voids authorized holds whose response window has closed unanswered
3. Retries voids for declined holds that did not go through
4. Fails ``created`` holds the payer never approved
5. Replays webhook deliveries that were recorded but not processed

One failing item never stops the rest of the tick.
"""
import asyncio
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seatpay.config import Settings, get_settings
from seatpay.core.hold_coordinator import HoldCoordinator
from seatpay.core.settlement import Decision, SettlementEngine
from seatpay.core.store import PaymentRecordStore
from seatpay.database.connection import close_db, get_session_factory
from seatpay.database.models import utcnow
from seatpay.integrations import build_provider_registry
from seatpay.integrations.webhook_handler import WebhookHandler
from seatpay.monitoring.health import SWEEPER_WORKER_NAME
from seatpay.monitoring.logging import setup_logging
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    """Counts for one tick."""

    accepts_retried: int = 0
    expired: int = 0
    declines_retried: int = 0
    abandoned: int = 0
    webhooks_replayed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accepts_retried": self.accepts_retried,
            "expired": self.expired,
            "declines_retried": self.declines_retried,
            "abandoned": self.abandoned,
            "webhooks_replayed": self.webhooks_replayed,
            "failures": len(self.failures),
        }


class ExpirySweeper:
    """Periodic cleanup of holds nobody resolved."""

    def __init__(
        self,
        engine: SettlementEngine,
        coordinator: HoldCoordinator,
        webhooks: Optional[WebhookHandler] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.engine = engine
        self.coordinator = coordinator
        self.webhooks = webhooks
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.store = PaymentRecordStore()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run a single tick and record the heartbeat."""
        now = now or utcnow()
        started = time.perf_counter()
        report = SweepReport()
        batch = self.settings.sweep_batch_size

        async with self.session_factory() as db:
            accepted = await self.store.find_pending_accepts(db, batch)
            expired = await self.store.find_expired_holds(db, now, batch)
            declined = await self.store.find_pending_declines(db, batch)
            accepted_bookings = [row.booking_id for row in accepted]
            expired_bookings = [row.booking_id for row in expired]
            declined_bookings = [row.booking_id for row in declined]

        for booking_id in accepted_bookings:
            if await self._sweep_item(
                report,
                "accept_retry",
                booking_id,
                lambda b=booking_id: self.engine.resolve(b, Decision.ACCEPT, now=now),
            ):
                report.accepts_retried += 1

        for booking_id in expired_bookings:
            if await self._sweep_item(
                report,
                "expire",
                booking_id,
                lambda b=booking_id: self.engine.resolve(b, Decision.EXPIRE, now=now),
            ):
                report.expired += 1

        for booking_id in declined_bookings:
            if await self._sweep_item(
                report,
                "decline_retry",
                booking_id,
                lambda b=booking_id: self.engine.resolve(b, Decision.DECLINE, now=now),
            ):
                report.declines_retried += 1

        try:
            report.abandoned = await self.coordinator.expire_abandoned(now=now, limit=batch)
            metrics.record_sweep_item("abandoned", "success")
        except Exception as e:
            metrics.record_sweep_item("abandoned", "failed")
            report.failures.append({"kind": "abandoned", "error": str(e)})
            logger.error("sweep_abandoned_failed", error=str(e))

        if self.webhooks is not None:
            try:
                report.webhooks_replayed = await self.webhooks.replay_unprocessed(limit=batch)
                metrics.record_sweep_item("webhook_replay", "success")
            except Exception as e:
                metrics.record_sweep_item("webhook_replay", "failed")
                report.failures.append({"kind": "webhook_replay", "error": str(e)})
                logger.error("sweep_webhook_replay_failed", error=str(e))

        async with self.session_factory() as db:
            await self.store.record_heartbeat(db, SWEEPER_WORKER_NAME, report.as_dict(), now)
            await db.commit()

        duration = time.perf_counter() - started
        metrics.record_sweep_tick("partial" if report.failures else "success", duration)
        logger.info("sweep_completed", duration=duration, **report.as_dict())
        return report

    async def _sweep_item(
        self,
        report: SweepReport,
        kind: str,
        booking_id: int,
        action: Callable[[], Awaitable[Any]],
    ) -> bool:
        try:
            result = await action()
        except Exception as e:
            metrics.record_sweep_item(kind, "failed")
            report.failures.append({"kind": kind, "booking_id": booking_id, "error": str(e)})
            logger.warning(
                "sweep_item_failed",
                kind=kind,
                booking_id=booking_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        metrics.record_sweep_item(kind, "noop" if getattr(result, "noop", False) else "success")
        return not getattr(result, "noop", False)

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Tick every ``sweep_interval_seconds`` until ``stop_event`` is set.

        A tick that raises is logged and the loop carries on.
        """
        interval = self.settings.sweep_interval_seconds
        logger.info("expiry_sweeper_started", interval=interval)
        try:
            while not stop_event.is_set():
                try:
                    await self.run_once()
                except Exception as e:
                    metrics.record_sweep_tick("failed", 0.0)
                    logger.error("sweep_tick_failed", error=str(e))

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("expiry_sweeper_stopped")


async def start_expiry_sweeper() -> None:
    """
    Start the expiry sweeper worker.

    Runs until SIGINT or SIGTERM.
    """
    setup_logging()
    settings = get_settings()

    logger.info("expiry_sweeper_worker_starting", interval=settings.sweep_interval_seconds)

    providers = build_provider_registry(settings)
    engine = SettlementEngine(providers, settings=settings)
    coordinator = HoldCoordinator(providers, settings=settings)
    webhooks = WebhookHandler(engine, coordinator, settings=settings)
    sweeper = ExpirySweeper(engine, coordinator, webhooks, settings=settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("expiry_sweeper_worker_shutdown_signal_received", signal=sig)
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await sweeper.run(stop_event)
    except Exception as e:
        logger.error("expiry_sweeper_worker_error", error=str(e))
        raise
    finally:
        await webhooks.close()
        await providers.aclose()
        await close_db()
        logger.info("expiry_sweeper_worker_stopped")


def main() -> None:
    asyncio.run(start_expiry_sweeper())


if __name__ == "__main__":
    main()
