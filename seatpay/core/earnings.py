"""
Earnings ledger.

Turns each captured authorization into exactly one driver earning, split
into platform service fee and driver net in integer cents, and lets drivers
withdraw earnings once they are available.
"""
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seatpay.config import Settings, get_settings
from seatpay.core.errors import (
    EarningNotFound,
    InsufficientAvailableEarnings,
    InvalidState,
    ValidationError,
)
from seatpay.database.connection import get_session_factory
from seatpay.database.models import (
    Booking,
    Earning,
    EarningStatus,
    PaymentAuthorization,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
)
from seatpay.domain.money import FeeSplit, Money
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def compute_fee_split(gross: Money, fee_percent: Decimal | float | str) -> FeeSplit:
    """
    Split a gross fare into service fee and driver net.

    The fee is rounded half-up to the cent; net is whatever remains, so
    fee + net always equals gross.
    """
    pct = Decimal(str(fee_percent))
    if pct < 0 or pct >= 100:
        raise ValidationError(f"Service fee percentage must be in [0, 100), got {pct}")
    return gross.split_fee(pct)


@dataclass(frozen=True)
class EarningsSummary:
    """Driver dashboard totals, all in cents of ``currency``."""

    driver_id: str
    currency: str
    total_net_cents: int
    total_gross_cents: int
    total_service_fee_cents: int
    this_week_cents: int
    this_month_cents: int
    last_month_cents: int
    available_for_payout_cents: int
    completed_rides: int


class EarningsLedger:
    """Records, promotes and pays out driver earnings."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._session_factory = session_factory
        self.settings = settings or get_settings()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def record_capture(
        self,
        db: AsyncSession,
        booking: Booking,
        authorization: PaymentAuthorization,
        gross: Money,
        fee_percent: Decimal | float | str | None = None,
        today: Optional[date] = None,
    ) -> Earning:
        """
        Create the earning for a capture on the caller's session.

        Idempotent per booking: an existing earning is returned unchanged.
        The UNIQUE(booking_id) constraint rejects any insert that slips past
        the lookup, failing the enclosing transaction.
        """
        existing = await self.get_for_booking(db, booking.id)
        if existing is not None:
            logger.info(
                "earning_already_recorded",
                booking_id=booking.id,
                earning_id=str(existing.id),
            )
            return existing

        pct = Decimal(
            str(fee_percent if fee_percent is not None else self.settings.service_fee_percentage)
        )
        split = compute_fee_split(gross, pct)

        earning = Earning(
            id=uuid.uuid4(),
            booking_id=booking.id,
            authorization_id=authorization.id,
            driver_id=booking.driver_id,
            ride_id=booking.ride_id,
            gross_amount_cents=split.gross.cents,
            service_fee_percentage=pct,
            service_fee_amount_cents=split.fee.cents,
            net_amount_cents=split.net.cents,
            currency=gross.currency,
            status=EarningStatus.PENDING.value,
            earning_date=today or date.today(),
            description=booking.description,
        )
        db.add(earning)
        await db.flush()

        metrics.record_earning(gross.currency, split.fee.cents)
        logger.info(
            "earning_recorded",
            booking_id=booking.id,
            driver_id=booking.driver_id,
            gross_cents=split.gross.cents,
            fee_cents=split.fee.cents,
            net_cents=split.net.cents,
        )
        return earning

    async def get_for_booking(self, db: AsyncSession, booking_id: int) -> Optional[Earning]:
        result = await db.execute(select(Earning).where(Earning.booking_id == booking_id))
        return result.scalar_one_or_none()

    async def mark_available(self, booking_id: int) -> Earning:
        """
        Promote an earning to ``available`` once its ride is complete.

        Raises:
            EarningNotFound: No earning for the booking
            InvalidState: The earning is already requested or paid out
        """
        async with self.session_factory() as db:
            result = await db.execute(
                update(Earning)
                .where(
                    Earning.booking_id == booking_id,
                    Earning.status == EarningStatus.PENDING.value,
                )
                .values(status=EarningStatus.AVAILABLE.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            earning = await self.get_for_booking(db, booking_id)
            if earning is None:
                raise EarningNotFound(f"No earning for booking {booking_id}")
            if result.rowcount == 0 and earning.status != EarningStatus.AVAILABLE.value:
                raise InvalidState(
                    f"Earning for booking {booking_id} is {earning.status}",
                    booking_id=booking_id,
                )

            logger.info("earning_available", booking_id=booking_id, earning_id=str(earning.id))
            return earning

    async def request_payout(
        self,
        driver_id: str,
        amount: Money,
        method: PayoutMethod | str,
        details: Dict[str, Any],
    ) -> PayoutRequest:
        """
        Debit available earnings, oldest first, into a payout request.

        Earnings are paid out whole, so the amount must equal the total of
        the oldest available earnings it covers.

        Raises:
            ValidationError: Bad amount, method or details, or an amount that
                would split an earning
            InsufficientAvailableEarnings: Not enough available earnings, or
                a concurrent request debited them first
        """
        if not amount.is_positive:
            raise ValidationError("Payout amount must be positive")
        try:
            payout_method = PayoutMethod(method)
        except ValueError:
            raise ValidationError(f"Unsupported payout method: {method!r}")
        if not details:
            raise ValidationError("Payout details are required")

        async with self.session_factory() as db:
            result = await db.execute(
                select(Earning)
                .where(
                    Earning.driver_id == driver_id,
                    Earning.currency == amount.currency,
                    Earning.status == EarningStatus.AVAILABLE.value,
                )
                .order_by(Earning.earning_date, Earning.created_at)
            )
            available = list(result.scalars().all())
            total_available = sum(e.net_amount_cents for e in available)

            if total_available < amount.cents:
                metrics.record_payout_request(payout_method.value, "insufficient")
                raise InsufficientAvailableEarnings(
                    f"Driver {driver_id} has {total_available} available, "
                    f"requested {amount.cents}",
                    available_cents=total_available,
                )

            selected: List[Earning] = []
            running = 0
            for earning in available:
                if running >= amount.cents:
                    break
                selected.append(earning)
                running += earning.net_amount_cents

            if running != amount.cents:
                metrics.record_payout_request(payout_method.value, "rejected")
                raise ValidationError(
                    f"Payout of {amount.cents} would split an earning; "
                    f"nearest whole amount is {running}",
                    payable_cents=running,
                )

            payout = PayoutRequest(
                id=uuid.uuid4(),
                driver_id=driver_id,
                amount_cents=amount.cents,
                currency=amount.currency,
                payout_method=payout_method.value,
                payout_details=details,
                status=PayoutStatus.REQUESTED.value,
            )
            db.add(payout)
            await db.flush()

            selected_ids = [e.id for e in selected]
            debit = await db.execute(
                update(Earning)
                .where(
                    Earning.id.in_(selected_ids),
                    Earning.status == EarningStatus.AVAILABLE.value,
                )
                .values(status=EarningStatus.REQUESTED.value, payout_request_id=payout.id)
                .execution_options(synchronize_session=False)
            )
            if debit.rowcount != len(selected_ids):
                await db.rollback()
                metrics.record_payout_request(payout_method.value, "conflict")
                logger.warning(
                    "payout_request_conflict",
                    driver_id=driver_id,
                    expected=len(selected_ids),
                    debited=debit.rowcount,
                )
                raise InsufficientAvailableEarnings(
                    "Available earnings changed while requesting payout",
                    available_cents=total_available,
                )

            await db.commit()

            metrics.record_payout_request(payout_method.value, "requested")
            logger.info(
                "payout_requested",
                payout_request_id=str(payout.id),
                driver_id=driver_id,
                amount_cents=amount.cents,
                earnings=len(selected_ids),
                method=payout_method.value,
            )
            return payout

    async def list_earnings(
        self,
        driver_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        limit: int = 100,
    ) -> List[Earning]:
        """Earnings for a driver, newest first, optionally within [start, end]."""
        stmt = select(Earning).where(Earning.driver_id == driver_id)
        if start is not None:
            stmt = stmt.where(Earning.earning_date >= start)
        if end is not None:
            stmt = stmt.where(Earning.earning_date <= end)
        stmt = stmt.order_by(Earning.earning_date.desc(), Earning.created_at.desc()).limit(limit)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_payout_requests(self, driver_id: str) -> List[PayoutRequest]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PayoutRequest)
                .where(PayoutRequest.driver_id == driver_id)
                .order_by(PayoutRequest.requested_at.desc())
            )
            return list(result.scalars().all())

    async def driver_summary(
        self, driver_id: str, today: Optional[date] = None
    ) -> EarningsSummary:
        """
        Dashboard totals for a driver.

        Weeks start on Sunday. Period totals are net of service fees.
        """
        today = today or date.today()
        week_start = today - timedelta(days=(today.weekday() + 1) % 7)
        month_start = today.replace(day=1)
        last_month_end = month_start - timedelta(days=1)
        last_month_start = last_month_end.replace(day=1)

        async with self.session_factory() as db:
            result = await db.execute(select(Earning).where(Earning.driver_id == driver_id))
            earnings = list(result.scalars().all())

        summary: Dict[str, int] = {
            "total_net_cents": 0,
            "total_gross_cents": 0,
            "total_service_fee_cents": 0,
            "this_week_cents": 0,
            "this_month_cents": 0,
            "last_month_cents": 0,
            "available_for_payout_cents": 0,
        }
        for earning in earnings:
            net = earning.net_amount_cents
            summary["total_net_cents"] += net
            summary["total_gross_cents"] += earning.gross_amount_cents
            summary["total_service_fee_cents"] += earning.service_fee_amount_cents
            if earning.status == EarningStatus.AVAILABLE.value:
                summary["available_for_payout_cents"] += net
            if week_start <= earning.earning_date <= today:
                summary["this_week_cents"] += net
            if month_start <= earning.earning_date <= today:
                summary["this_month_cents"] += net
            if last_month_start <= earning.earning_date <= last_month_end:
                summary["last_month_cents"] += net

        currency = earnings[0].currency if earnings else self.settings.default_currency
        return EarningsSummary(
            driver_id=driver_id,
            currency=currency,
            completed_rides=len(earnings),
            **summary,
        )
