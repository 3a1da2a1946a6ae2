"""
Booking gateway.

The ride-booking subsystem owns bookings; the settlement core only reads
them and writes the payment-facing columns. Writes run on the caller's
session so they commit together with the authorization change.
"""
import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from seatpay.core.errors import BookingNotFound
from seatpay.database.models import Booking, DriverDecision, PaymentStatus

logger = structlog.get_logger(__name__)


class BookingGateway:
    """Reads bookings and updates their payment status, deadline and decision."""

    async def get_booking(self, db: AsyncSession, booking_id: int) -> Booking:
        """
        Raises:
            BookingNotFound: No booking with that id
        """
        result = await db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found", booking_id=booking_id)
        return booking

    async def set_payment_status(
        self, db: AsyncSession, booking_id: int, status: PaymentStatus
    ) -> None:
        await self._update(db, booking_id, payment_status=status.value)

    async def set_response_deadline(
        self, db: AsyncSession, booking_id: int, deadline: datetime
    ) -> None:
        await self._update(db, booking_id, response_deadline=deadline)

    async def record_driver_decision(
        self, db: AsyncSession, booking_id: int, decision: DriverDecision
    ) -> None:
        await self._update(db, booking_id, driver_decision=decision.value)

    async def link_authorization(
        self, db: AsyncSession, booking_id: int, authorization_id: Optional[uuid.UUID]
    ) -> None:
        await self._update(db, booking_id, payment_authorization_id=authorization_id)

    async def _update(self, db: AsyncSession, booking_id: int, **values: object) -> None:
        result = await db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise BookingNotFound(f"Booking {booking_id} not found", booking_id=booking_id)
        logger.debug("booking_updated", booking_id=booking_id, fields=sorted(values))
