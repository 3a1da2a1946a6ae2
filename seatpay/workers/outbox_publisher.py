"""
Outbox publisher background worker.

Continuously polls the outbox table and hands each event to the
notification dispatcher.
"""
import asyncio
import signal
from typing import Any

import structlog

from seatpay.config import get_settings
from seatpay.core.notifications import NotificationDispatcher
from seatpay.core.outbox import OutboxPublisher
from seatpay.database.connection import close_db
from seatpay.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT or SIGTERM.
    """
    setup_logging()

    logger.info("outbox_publisher_worker_starting")

    publisher = OutboxPublisher(
        publisher_func=NotificationDispatcher(),
        batch_size=100,
        poll_interval_seconds=1.0,
        max_attempts=get_settings().outbox_max_attempts,
    )
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.run(stop_event)
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
