"""
Transactional outbox pattern implementation.

Settlement writes events to the database in the same transaction as the
state change, then this publisher delivers them asynchronously. Delivery is
at-least-once: an event is only marked published after its handler returns.
An event whose handler keeps failing is parked after ``max_attempts`` tries
so it stops occupying the head of every batch.
"""
import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seatpay.database.connection import get_session_factory
from seatpay.database.models import OutboxEvent, utcnow
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[None]]


def add_outbox_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """Stage an outbox event on the caller's session; committed with it."""
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
        published=False,
        attempts=0,
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    1. Read unparked, unpublished events, fewest attempts first
    2. Hand each to ``publisher_func``
    3. Mark the delivered ones as published and count failures on the rest
    """

    def __init__(
        self,
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_attempts: int = 10,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine receiving each event
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
            session_factory: Session factory (defaults to the global one)
            max_attempts: Failed deliveries before an event is parked
        """
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._session_factory = session_factory

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
            max_attempts=max_attempts,
        )

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        # Fresh events sort ahead of ones that already failed
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False), OutboxEvent.parked_at.is_(None))
            .order_by(OutboxEvent.attempts, OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> Optional[str]:
        """
        Publish a single event.

        Returns:
            Optional[str]: None if published, otherwise the handler's error
        """
        started = time.perf_counter()
        try:
            event_data = {
                "id": event.id,
                "aggregate_id": str(event.aggregate_id),
                "aggregate_type": event.aggregate_type,
                "event_type": event.event_type,
                "payload": event.payload,
                "created_at": event.created_at.isoformat(),
            }

            await self.publisher_func(event_data)

            metrics.record_outbox_event_published(
                event.event_type, time.perf_counter() - started
            )
            logger.info(
                "outbox_event_published",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=str(event.aggregate_id),
            )
            return None

        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempts=event.attempts + 1,
                error=str(e),
            )
            return str(e) or type(e).__name__

    async def _record_failure(self, db: AsyncSession, event: OutboxEvent, error: str) -> None:
        """Count a failed delivery and park the event once it runs out of attempts."""
        attempts = event.attempts + 1
        values: Dict[str, Any] = {"attempts": attempts, "last_error": error[:2000]}
        parked = attempts >= self.max_attempts
        if parked:
            values["parked_at"] = utcnow()

        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if parked:
            metrics.record_outbox_event_parked(event.event_type)
            logger.critical(
                "outbox_event_parked",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=str(event.aggregate_id),
                attempts=attempts,
                error=error,
            )

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self.session_factory() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids = []
                failed = 0
                for event in events:
                    error = await self._publish_event(event)
                    if error is None:
                        published_ids.append(event.id)
                    else:
                        failed += 1
                        await self._record_failure(db, event, error)

                await self._mark_as_published(db, published_ids)
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=failed,
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        Poll and publish until ``stop_event`` is set.

        Sleeps between polls are interruptible by the stop event.
        """
        logger.info("outbox_publisher_started")
        try:
            while not stop_event.is_set():
                published_count = await self.process_batch()
                metrics.set_outbox_queue_depth(await self.get_pending_count())

                # Drain immediately while there is backlog
                delay = self.poll_interval_seconds if published_count == 0 else 0.1
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("outbox_publisher_stopped")

    async def get_pending_count(self) -> int:
        """Number of unpublished events still eligible for delivery."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(
                    OutboxEvent.published.is_(False),
                    OutboxEvent.parked_at.is_(None),
                )
            )
            return int(result.scalar_one())

    async def get_parked_count(self) -> int:
        """Number of events parked for operator attention."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(
                    OutboxEvent.published.is_(False),
                    OutboxEvent.parked_at.is_not(None),
                )
            )
            return int(result.scalar_one())
