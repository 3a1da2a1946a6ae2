"""
Hold coordinator.

Opens a hold on the chosen rail when a passenger requests seats, and turns
the payer's out-of-band approval into an authorized hold with a response
deadline for the driver.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seatpay.config import Settings, get_settings
from seatpay.core.bookings import BookingGateway
from seatpay.core.errors import (
    AlreadyAuthorized,
    AmountExceedsAuthorization,
    AuthorizationNotFound,
    DuplicateHold,
    InvalidState,
    NotApproved,
    ProviderRejected,
    ProviderUnavailable,
    ValidationError,
)
from seatpay.core.notifications import HOLD_ESCALATED
from seatpay.core.outbox import add_outbox_event
from seatpay.core.store import PaymentRecordStore
from seatpay.database.connection import get_session_factory
from seatpay.database.models import (
    AuthorizationState,
    PaymentAuthorization,
    PaymentStatus,
    Rail,
    utcnow,
)
from seatpay.domain.money import Money
from seatpay.integrations.base import (
    AuthorizationResult,
    OrderIntent,
    ProviderRegistry,
    ProviderStatus,
)
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HoldResult:
    """What the client needs to send the payer to approval."""

    authorization_id: uuid.UUID
    provider_order_id: str
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class ApprovalResult:
    authorization_id: uuid.UUID
    provider_authorization_id: str
    expires_at: Optional[datetime]
    response_deadline: datetime


class HoldCoordinator:
    """Creates and authorizes holds; never captures or voids."""

    def __init__(
        self,
        providers: ProviderRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[PaymentRecordStore] = None,
        bookings: Optional[BookingGateway] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.providers = providers
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.store = store or PaymentRecordStore()
        self.bookings = bookings or BookingGateway()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def open_hold(self, booking_id: int, amount: Money, rail: Rail | str) -> HoldResult:
        """
        Create an order on the rail for the payer to approve.

        The booking's payment status is left alone; it only changes once the
        hold is authorized.

        Raises:
            ValidationError: Bad amount or rail, unknown booking
            AmountExceedsAuthorization: Amount larger than the booking fare
            DuplicateHold: The booking already has an active hold
            ProviderUnavailable: The rail could not be reached
        """
        if not amount.is_positive:
            raise ValidationError(f"Hold amount must be positive, got {amount.cents}")
        provider = self.providers.get(rail)
        rail_value = provider.rail.value
        log = logger.bind(booking_id=booking_id, rail=rail_value, amount_cents=amount.cents)

        async with self.session_factory() as db:
            booking = await self.bookings.get_booking(db, booking_id)
            if amount.currency != booking.currency:
                raise ValidationError(
                    f"Hold currency {amount.currency} does not match booking {booking.currency}"
                )
            if amount.cents > booking.amount_cents:
                raise AmountExceedsAuthorization(
                    f"Hold {amount.cents} exceeds booking total {booking.amount_cents}",
                    booking_id=booking_id,
                )
            active = await self.store.get_active_for_booking(db, booking_id)
            if active is not None:
                metrics.record_hold_opened(rail_value, "duplicate", amount.cents)
                raise DuplicateHold(
                    f"Booking {booking_id} already has hold {active.id} ({active.state})",
                    booking_id=booking_id,
                )
            description = booking.description or f"Ride {booking.ride_id} seat booking"

        authorization_id = uuid.uuid4()
        try:
            order = await provider.create_order(
                amount,
                OrderIntent.AUTHORIZE,
                idempotency_key=str(authorization_id),
                metadata={
                    "booking_id": str(booking_id),
                    "authorization_id": str(authorization_id),
                    "description": description,
                },
            )
        except Exception as e:
            metrics.record_hold_opened(rail_value, "failed", amount.cents)
            log.error("hold_order_failed", error_type=type(e).__name__, error=str(e))
            raise

        async with self.session_factory() as db:
            row = PaymentAuthorization(
                id=authorization_id,
                booking_id=booking_id,
                provider=rail_value,
                provider_order_id=order.order_id,
                amount_cents=amount.cents,
                currency=amount.currency,
            )
            try:
                await self.store.add_created(db, row)
            except DuplicateHold:
                metrics.record_hold_opened(rail_value, "duplicate", amount.cents)
                log.warning("hold_lost_race", provider_order_id=order.order_id)
                raise
            await self.store.record_event(
                db,
                authorization_id,
                "hold_opened",
                {"provider_order_id": order.order_id, "amount_cents": amount.cents},
            )
            await db.commit()

        metrics.record_hold_opened(rail_value, "created", amount.cents)
        log.info(
            "hold_opened",
            authorization_id=str(authorization_id),
            provider_order_id=order.order_id,
        )
        return HoldResult(
            authorization_id=authorization_id,
            provider_order_id=order.order_id,
            approval_url=order.approval_url,
            client_secret=order.client_secret,
        )

    async def confirm_approval(
        self,
        authorization_id: uuid.UUID,
        provider_order_id: str,
        now: Optional[datetime] = None,
    ) -> ApprovalResult:
        """
        Authorize the hold once the payer has approved it.

        Sets the driver's response deadline to the configured window, capped
        at the rail's hold expiry.

        Raises:
            AuthorizationNotFound: Unknown authorization id
            ValidationError: Order id does not belong to this authorization
            AlreadyAuthorized: The hold is already authorized
            InvalidState: The hold is terminal
            NotApproved: The payer has not approved yet; retry later
            ProviderUnavailable: The rail could not be reached; retry later
        """
        async with self.session_factory() as db:
            row = await self.store.get_authorization(db, authorization_id)
            if row is None:
                raise AuthorizationNotFound(f"Authorization {authorization_id} not found")
            if row.provider_order_id != provider_order_id:
                raise ValidationError(
                    f"Order {provider_order_id} does not belong to authorization "
                    f"{authorization_id}"
                )
            if row.state == AuthorizationState.AUTHORIZED.value:
                raise AlreadyAuthorized(f"Authorization {authorization_id} is already authorized")
            if row.state != AuthorizationState.CREATED.value:
                raise InvalidState(f"Authorization {authorization_id} is {row.state}")
            rail = row.provider
            booking_id = row.booking_id

        provider = self.providers.get(rail)
        log = logger.bind(
            authorization_id=str(authorization_id),
            booking_id=booking_id,
            rail=rail,
        )
        started = time.perf_counter()

        try:
            authorization = await provider.authorize(provider_order_id)
        except AlreadyAuthorized as e:
            if e.authorization is None:
                metrics.record_approval(rail, "failed")
                raise
            log.info("rail_already_authorized")
            authorization = e.authorization
        except NotApproved:
            metrics.record_approval(rail, "not_approved")
            log.info("hold_not_yet_approved")
            raise
        except ProviderUnavailable:
            metrics.record_approval(rail, "unavailable")
            log.warning("hold_approval_provider_unavailable")
            raise
        except (ProviderRejected, InvalidState) as e:
            await self._mark_failed(authorization_id, e, log)
            metrics.record_approval(rail, "failed")
            raise

        result = await self._record_authorized(
            authorization_id, booking_id, authorization, now or utcnow(), log
        )
        metrics.record_approval(rail, "authorized")
        log.info(
            "hold_authorized",
            provider_authorization_id=authorization.authorization_id,
            response_deadline=result.response_deadline.isoformat(),
            duration=time.perf_counter() - started,
        )
        return result

    async def _record_authorized(
        self,
        authorization_id: uuid.UUID,
        booking_id: int,
        authorization: AuthorizationResult,
        now: datetime,
        log: Any,
    ) -> ApprovalResult:
        deadline = now + timedelta(hours=self.settings.response_window_hours)
        if authorization.expires_at is not None and authorization.expires_at < deadline:
            deadline = authorization.expires_at

        async with self.session_factory() as db:
            moved = await self.store.transition(
                db,
                authorization_id,
                [AuthorizationState.CREATED.value],
                AuthorizationState.AUTHORIZED.value,
                provider_authorization_id=authorization.authorization_id,
                expires_at=authorization.expires_at,
            )
            if moved:
                await self.bookings.set_response_deadline(db, booking_id, deadline)
                await self.bookings.set_payment_status(db, booking_id, PaymentStatus.AUTHORIZED)
                await self.bookings.link_authorization(db, booking_id, authorization_id)
                await self.store.record_event(
                    db,
                    authorization_id,
                    "hold_authorized",
                    {
                        "provider_authorization_id": authorization.authorization_id,
                        "response_deadline": deadline.isoformat(),
                    },
                )
                await db.commit()
                return ApprovalResult(
                    authorization_id=authorization_id,
                    provider_authorization_id=authorization.authorization_id,
                    expires_at=authorization.expires_at,
                    response_deadline=deadline,
                )

            row = await self.store.get_authorization(db, authorization_id)
            if row is not None and row.state == AuthorizationState.AUTHORIZED.value:
                await db.rollback()
                raise AlreadyAuthorized(f"Authorization {authorization_id} is already authorized")

        # Resolved while the rail was authorizing; the new hold must not linger
        await self._release_orphaned_hold(authorization_id, booking_id, authorization, log)
        raise InvalidState(
            f"Authorization {authorization_id} was resolved before approval completed"
        )

    async def _release_orphaned_hold(
        self,
        authorization_id: uuid.UUID,
        booking_id: int,
        authorization: AuthorizationResult,
        log: Any,
    ) -> None:
        async with self.session_factory() as db:
            row = await self.store.get_authorization(db, authorization_id)
            rail = row.provider if row is not None else None
        if rail is None:
            return

        try:
            await self.providers.get(rail).void(
                authorization.authorization_id,
                idempotency_key=f"void-{authorization_id}",
            )
            log.warning("orphaned_hold_voided")
            return
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            log.error("orphaned_hold_void_failed", error=error)

        async with self.session_factory() as db:
            if await self.store.flag_for_review(db, authorization_id, f"orphaned_hold: {error}"):
                add_outbox_event(
                    db,
                    authorization_id,
                    "payment_authorization",
                    HOLD_ESCALATED,
                    {
                        "authorization_id": str(authorization_id),
                        "booking_id": booking_id,
                        "reason": "orphaned_hold",
                        "provider_authorization_id": authorization.authorization_id,
                        "detail": error,
                    },
                )
                metrics.record_escalation("orphaned_hold")
                log.critical("hold_escalated_for_review", reason="orphaned_hold")
            await db.commit()

    async def _mark_failed(self, authorization_id: uuid.UUID, error: Exception, log: Any) -> None:
        async with self.session_factory() as db:
            moved = await self.store.transition(
                db,
                authorization_id,
                [AuthorizationState.CREATED.value],
                AuthorizationState.FAILED.value,
                last_error=str(error)[:2000],
            )
            if moved:
                await self.store.record_event(
                    db,
                    authorization_id,
                    "hold_failed",
                    {"error_type": type(error).__name__},
                )
            await db.commit()
        log.warning("hold_failed", error_type=type(error).__name__, error=str(error))

    async def get_hold(self, authorization_id: uuid.UUID) -> PaymentAuthorization:
        async with self.session_factory() as db:
            row = await self.store.get_authorization(db, authorization_id)
        if row is None:
            raise AuthorizationNotFound(f"Authorization {authorization_id} not found")
        return row

    async def provider_status(self, authorization_id: uuid.UUID) -> ProviderStatus:
        """Rail-side view of a hold, for support tooling."""
        row = await self.get_hold(authorization_id)
        reference = row.provider_authorization_id or row.provider_order_id
        return await self.providers.get(row.provider).fetch_status(reference)

    async def expire_abandoned(self, now: Optional[datetime] = None, limit: int = 100) -> int:
        """
        Fail ``created`` holds the payer never approved.

        Returns the number of rows moved to ``failed``.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.approval_timeout_seconds)
        failed = 0
        async with self.session_factory() as db:
            rows = await self.store.find_abandoned_orders(db, cutoff, limit)
            for row in rows:
                moved = await self.store.transition(
                    db,
                    row.id,
                    [AuthorizationState.CREATED.value],
                    AuthorizationState.FAILED.value,
                    last_error="approval timed out",
                )
                if moved:
                    await self.store.record_event(
                        db, row.id, "hold_abandoned", {"created_at": row.created_at.isoformat()}
                    )
                    failed += 1
            await db.commit()
        if failed:
            logger.info("abandoned_holds_failed", count=failed)
        return failed

