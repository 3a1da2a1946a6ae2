"""
Settlement engine.

Resolves an authorized hold to captured (driver accepted) or voided
(driver declined, or the response window elapsed). Each resolution runs in
three steps:

1. Claim the authorization with a conditional UPDATE and commit
2. Call the rail with no transaction open
3. Finalize authorization, booking, earning and outbox in one transaction

Only the claim holder reaches step 2, so concurrent resolvers for the same
booking issue at most one provider call between them. A provider failure
releases the claim and leaves the row ``authorized``; it is never turned
into the opposite terminal state.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from seatpay.config import Settings, get_settings
from seatpay.core.bookings import BookingGateway
from seatpay.core.earnings import EarningsLedger
from seatpay.core.errors import (
    AmountExceedsAuthorization,
    InvalidState,
    NoActiveHold,
    ResolutionInProgress,
    ResponseWindowClosed,
    SettlementError,
    ValidationError,
)
from seatpay.core.notifications import (
    HOLD_ESCALATED,
    PAYMENT_CAPTURED,
    PAYMENT_REFUNDED,
    PAYMENT_RELEASED,
)
from seatpay.core.outbox import add_outbox_event
from seatpay.core.store import PaymentRecordStore
from seatpay.database.connection import get_session_factory
from seatpay.database.models import (
    AuthorizationState,
    Booking,
    DriverDecision,
    PaymentAuthorization,
    PaymentStatus,
    utcnow,
)
from seatpay.domain.money import Money
from seatpay.integrations.base import (
    PaymentProvider,
    ProviderEvent,
    ProviderRegistry,
    ProviderState,
    ProviderStatus,
)
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

AGGREGATE_TYPE = "payment_authorization"


class Decision(str, Enum):
    """Why a hold is being resolved."""

    ACCEPT = "accept"
    DECLINE = "decline"
    EXPIRE = "expire"


@dataclass(frozen=True)
class SettlementResult:
    booking_id: int
    decision: Decision
    state: str
    payment_status: str
    authorization_id: Optional[uuid.UUID] = None
    capture_id: Optional[str] = None
    noop: bool = False


@dataclass(frozen=True)
class RefundResult:
    booking_id: int
    authorization_id: uuid.UUID
    refund_id: str
    amount_cents: int
    total_refunded_cents: int
    currency: str


@dataclass(frozen=True)
class _Claim:
    """Snapshot of a claimed authorization, carried across the provider call."""

    token: str
    authorization_id: uuid.UUID
    booking_id: int
    provider: str
    provider_authorization_id: str
    amount_cents: int
    currency: str
    decision: Decision


class SettlementEngine:
    """
    Rail-agnostic resolution of holds.

    Safe to call from the booking API, webhook processing and the expiry
    sweep at the same time.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[PaymentRecordStore] = None,
        bookings: Optional[BookingGateway] = None,
        earnings: Optional[EarningsLedger] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.providers = providers
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.store = store or PaymentRecordStore()
        self.bookings = bookings or BookingGateway()
        self.earnings = earnings or EarningsLedger(session_factory, self.settings)

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def resolve(
        self,
        booking_id: int,
        decision: Union[Decision, str],
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        """
        Resolve the booking's active hold. Accept captures the full
        authorized amount.

        Returns the terminal state. A booking whose hold is already terminal
        gets that state back as a no-op.

        Raises:
            NoActiveHold: The booking never had a hold
            ResponseWindowClosed: Accept at or after the response deadline
            InvalidState: Accept on a hold the payer has not approved, or
                decline or expiry after the driver accepted
            ProviderUnavailable: The rail call failed; safe to retry
            ResolutionInProgress: Another resolver holds the claim
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}")

        started = time.perf_counter()
        correlation_id = uuid.uuid4()
        log = logger.bind(
            booking_id=booking_id,
            decision=decision.value,
            correlation_id=str(correlation_id),
        )
        wait_until = time.monotonic() + self.settings.settlement_claim_wait_seconds
        waited = False

        try:
            while True:
                prepared = await self._prepare(
                    booking_id, decision, now or utcnow(), correlation_id, log
                )
                if isinstance(prepared, SettlementResult):
                    if waited and not prepared.noop:
                        prepared = _as_noop(prepared)
                    outcome = "noop" if prepared.noop else prepared.state
                    metrics.record_settlement(
                        decision.value, outcome, time.perf_counter() - started
                    )
                    return prepared

                if prepared is None:
                    if time.monotonic() >= wait_until:
                        log.warning("settlement_claim_wait_timeout")
                        raise ResolutionInProgress(
                            f"Booking {booking_id} is being resolved by another caller",
                            booking_id=booking_id,
                        )
                    waited = True
                    await asyncio.sleep(self.settings.settlement_claim_poll_seconds)
                    continue

                result = await self._settle(prepared, correlation_id, log)
                metrics.record_settlement(
                    decision.value, result.state, time.perf_counter() - started
                )
                return result

        except SettlementError as e:
            outcome = "in_progress" if isinstance(e, ResolutionInProgress) else "failed"
            metrics.record_settlement(decision.value, outcome, time.perf_counter() - started)
            raise

    async def _prepare(
        self,
        booking_id: int,
        decision: Decision,
        now: datetime,
        correlation_id: uuid.UUID,
        log: Any,
    ) -> Union[SettlementResult, _Claim, None]:
        """
        Inspect the booking and try to claim its hold.

        Returns a final result, a claim to act on, or None when another
        resolver owns the hold.
        """
        async with self.session_factory() as db:
            booking = await self.bookings.get_booking(db, booking_id)
            row = await self.store.get_active_for_booking(db, booking_id)

            if row is None:
                latest = await self.store.get_latest_for_booking(db, booking_id)
                if latest is None:
                    raise NoActiveHold(
                        f"Booking {booking_id} has no payment hold", booking_id=booking_id
                    )
                log.info("settlement_noop_terminal", state=latest.state)
                return SettlementResult(
                    booking_id=booking_id,
                    decision=decision,
                    state=latest.state,
                    payment_status=booking.payment_status,
                    authorization_id=latest.id,
                    capture_id=latest.provider_capture_id,
                    noop=True,
                )

            if row.state == AuthorizationState.CREATED.value:
                return await self._resolve_unapproved(db, booking, row, decision, correlation_id, log)

            accepted = booking.driver_decision == DriverDecision.ACCEPTED.value
            if decision is Decision.ACCEPT:
                if booking.driver_decision == DriverDecision.DECLINED.value:
                    raise InvalidState(
                        f"Booking {booking_id} was already declined", booking_id=booking_id
                    )
                # A recorded acceptance is retried past the deadline
                if (
                    not accepted
                    and booking.response_deadline is not None
                    and now >= booking.response_deadline
                ):
                    raise ResponseWindowClosed(
                        f"Response window for booking {booking_id} closed at "
                        f"{booking.response_deadline.isoformat()}",
                        booking_id=booking_id,
                    )
            elif accepted:
                raise InvalidState(
                    f"Booking {booking_id} was accepted; its capture is pending",
                    booking_id=booking_id,
                )
            elif decision is Decision.EXPIRE:
                if booking.response_deadline is not None and now < booking.response_deadline:
                    raise InvalidState(
                        f"Response window for booking {booking_id} is still open",
                        booking_id=booking_id,
                    )

            token = uuid.uuid4().hex
            ttl = timedelta(seconds=self.settings.settlement_claim_ttl_seconds)
            claimed = await self.store.claim(db, row.id, token, decision.value, now, ttl)
            if not claimed:
                await db.rollback()
                log.info("settlement_claim_busy", authorization_id=str(row.id))
                return None

            # Persist the decision so the sweep retries the rail call if it fails
            if decision is Decision.ACCEPT:
                await self.bookings.record_driver_decision(db, booking_id, DriverDecision.ACCEPTED)
            elif decision is Decision.DECLINE:
                await self.bookings.record_driver_decision(db, booking_id, DriverDecision.DECLINED)

            await self.store.record_event(
                db,
                row.id,
                "settlement_claimed",
                {"decision": decision.value, "amount_cents": row.amount_cents},
                correlation_id,
            )
            await db.commit()

            log.info("settlement_claimed", authorization_id=str(row.id))
            return _Claim(
                token=token,
                authorization_id=row.id,
                booking_id=booking_id,
                provider=row.provider,
                provider_authorization_id=row.provider_authorization_id or row.provider_order_id,
                amount_cents=row.amount_cents,
                currency=row.currency,
                decision=decision,
            )

    async def _resolve_unapproved(
        self,
        db: AsyncSession,
        booking: Booking,
        row: PaymentAuthorization,
        decision: Decision,
        correlation_id: uuid.UUID,
        log: Any,
    ) -> Optional[SettlementResult]:
        """
        Resolve a hold the payer never approved.

        Nothing is held at the rail, so no provider call is made and the
        booking's payment status stays as it was.
        """
        if decision is Decision.ACCEPT:
            raise InvalidState(
                f"Hold for booking {booking.id} has not been authorized yet",
                booking_id=booking.id,
            )

        moved = await self.store.transition(
            db,
            row.id,
            [AuthorizationState.CREATED.value],
            AuthorizationState.VOIDED.value,
        )
        if not moved:
            # Concurrently authorized; go round again and claim it
            await db.rollback()
            return None

        if decision is Decision.DECLINE:
            await self.bookings.record_driver_decision(db, booking.id, DriverDecision.DECLINED)
        await self.store.record_event(
            db,
            row.id,
            "unapproved_hold_voided",
            {"decision": decision.value},
            correlation_id,
        )
        await db.commit()

        log.info("unapproved_hold_voided", authorization_id=str(row.id))
        return SettlementResult(
            booking_id=booking.id,
            decision=decision,
            state=AuthorizationState.VOIDED.value,
            payment_status=booking.payment_status,
            authorization_id=row.id,
        )

    async def _settle(
        self, claim: _Claim, correlation_id: uuid.UUID, log: Any
    ) -> SettlementResult:
        """Call the rail for a claimed hold and record the outcome."""
        provider = self.providers.get(claim.provider)
        log = log.bind(authorization_id=str(claim.authorization_id), rail=claim.provider)

        if claim.decision is Decision.ACCEPT:
            try:
                capture_id = await provider.capture(
                    claim.provider_authorization_id,
                    None,
                    idempotency_key=f"capture-{claim.authorization_id}",
                )
            except InvalidState as e:
                status = await self._fetch_status_quietly(provider, claim, log)
                if status is not None and status.state is ProviderState.CAPTURED:
                    log.info("capture_reconciled_from_provider")
                    return await self._finalize_capture(
                        claim, status.capture_id, correlation_id, log
                    )
                await self._handle_failure(claim, e, correlation_id, log, escalate=True)
                raise
            except Exception as e:
                await self._handle_failure(claim, e, correlation_id, log)
                raise
            return await self._finalize_capture(claim, capture_id, correlation_id, log)

        try:
            await provider.void(
                claim.provider_authorization_id,
                idempotency_key=f"void-{claim.authorization_id}",
            )
        except InvalidState as e:
            status = await self._fetch_status_quietly(provider, claim, log)
            if status is not None and status.state in (ProviderState.VOIDED, ProviderState.EXPIRED):
                log.info("void_reconciled_from_provider", provider_state=status.state.value)
                return await self._finalize_void(claim, correlation_id, log)
            await self._handle_failure(claim, e, correlation_id, log, escalate=True)
            raise
        except Exception as e:
            await self._handle_failure(claim, e, correlation_id, log)
            raise
        return await self._finalize_void(claim, correlation_id, log)

    async def _fetch_status_quietly(
        self, provider: PaymentProvider, claim: _Claim, log: Any
    ) -> Optional[ProviderStatus]:
        """Rail-side status, or None if it cannot be fetched right now."""
        try:
            return await provider.fetch_status(claim.provider_authorization_id)
        except SettlementError as e:
            log.warning("provider_status_unavailable", error=str(e))
            return None

    async def _finalize_capture(
        self,
        claim: _Claim,
        capture_id: Optional[str],
        correlation_id: uuid.UUID,
        log: Any,
    ) -> SettlementResult:
        async with self.session_factory() as db:
            done = await self.store.complete_claimed(
                db,
                claim.authorization_id,
                claim.token,
                AuthorizationState.CAPTURED.value,
                provider_capture_id=capture_id,
                captured_amount_cents=claim.amount_cents,
                last_error=None,
            )
            if not done:
                await db.rollback()
                return await self._current_result(db, claim, log)

            row = await self.store.get_authorization(db, claim.authorization_id)
            booking = await self.bookings.get_booking(db, claim.booking_id)
            await self._apply_capture_effects(
                db, booking, row, claim.amount_cents, capture_id, correlation_id
            )
            await db.commit()

        log.info("hold_captured", capture_id=capture_id, amount_cents=claim.amount_cents)
        return SettlementResult(
            booking_id=claim.booking_id,
            decision=claim.decision,
            state=AuthorizationState.CAPTURED.value,
            payment_status=PaymentStatus.CAPTURED.value,
            authorization_id=claim.authorization_id,
            capture_id=capture_id,
        )

    async def _apply_capture_effects(
        self,
        db: AsyncSession,
        booking: Booking,
        row: PaymentAuthorization,
        amount_cents: int,
        capture_id: Optional[str],
        correlation_id: uuid.UUID,
    ) -> None:
        """Booking status and decision, earning and notification for a capture."""
        await self.bookings.set_payment_status(db, booking.id, PaymentStatus.CAPTURED)
        if booking.driver_decision != DriverDecision.DECLINED.value:
            await self.bookings.record_driver_decision(db, booking.id, DriverDecision.ACCEPTED)
        await self.earnings.record_capture(
            db, booking, row, Money(cents=amount_cents, currency=row.currency)
        )
        add_outbox_event(
            db,
            row.id,
            AGGREGATE_TYPE,
            PAYMENT_CAPTURED,
            {
                "booking_id": booking.id,
                "authorization_id": str(row.id),
                "passenger_id": booking.passenger_id,
                "driver_id": booking.driver_id,
                "amount_cents": amount_cents,
                "currency": row.currency,
                "capture_id": capture_id,
            },
        )
        await self.store.record_event(
            db,
            row.id,
            "hold_captured",
            {"capture_id": capture_id, "amount_cents": amount_cents},
            correlation_id,
        )

    async def _finalize_void(
        self, claim: _Claim, correlation_id: uuid.UUID, log: Any
    ) -> SettlementResult:
        status = (
            PaymentStatus.VOIDED if claim.decision is Decision.DECLINE else PaymentStatus.EXPIRED
        )
        async with self.session_factory() as db:
            done = await self.store.complete_claimed(
                db,
                claim.authorization_id,
                claim.token,
                AuthorizationState.VOIDED.value,
                last_error=None,
            )
            if not done:
                await db.rollback()
                return await self._current_result(db, claim, log)

            booking = await self.bookings.get_booking(db, claim.booking_id)
            await self._apply_release_effects(
                db, booking, claim.authorization_id, status, correlation_id
            )
            await db.commit()

        log.info("hold_voided", payment_status=status.value)
        return SettlementResult(
            booking_id=claim.booking_id,
            decision=claim.decision,
            state=AuthorizationState.VOIDED.value,
            payment_status=status.value,
            authorization_id=claim.authorization_id,
        )

    async def _apply_release_effects(
        self,
        db: AsyncSession,
        booking: Booking,
        authorization_id: uuid.UUID,
        status: PaymentStatus,
        correlation_id: uuid.UUID,
    ) -> None:
        await self.bookings.set_payment_status(db, booking.id, status)
        add_outbox_event(
            db,
            authorization_id,
            AGGREGATE_TYPE,
            PAYMENT_RELEASED,
            {
                "booking_id": booking.id,
                "authorization_id": str(authorization_id),
                "passenger_id": booking.passenger_id,
                "reason": status.value,
            },
        )
        await self.store.record_event(
            db, authorization_id, "hold_voided", {"payment_status": status.value}, correlation_id
        )

    async def _current_result(
        self, db: AsyncSession, claim: _Claim, log: Any
    ) -> SettlementResult:
        """Result for a claim that was overtaken (webhook or claim takeover)."""
        row = await self.store.get_authorization(db, claim.authorization_id)
        booking = await self.bookings.get_booking(db, claim.booking_id)
        log.warning("settlement_claim_overtaken", state=row.state)
        return SettlementResult(
            booking_id=claim.booking_id,
            decision=claim.decision,
            state=row.state,
            payment_status=booking.payment_status,
            authorization_id=row.id,
            capture_id=row.provider_capture_id,
            noop=True,
        )

    async def _handle_failure(
        self,
        claim: _Claim,
        error: Exception,
        correlation_id: uuid.UUID,
        log: Any,
        escalate: bool = False,
    ) -> None:
        """
        Release the claim after a failed provider call.

        Failed voids are counted; once they reach the configured limit, or
        when the rail reports a state that contradicts the decision, the
        hold is flagged for manual review.
        """
        void_failed = claim.decision is not Decision.ACCEPT
        log.error(
            "settlement_provider_call_failed",
            error_type=type(error).__name__,
            error=str(error),
        )
        async with self.session_factory() as db:
            attempts = await self.store.release_claim(
                db, claim.authorization_id, claim.token, str(error), void_failed=void_failed
            )
            await self.store.record_event(
                db,
                claim.authorization_id,
                "capture_failed" if claim.decision is Decision.ACCEPT else "void_failed",
                {"error_type": type(error).__name__, "attempts": attempts},
                correlation_id,
            )
            if escalate:
                await self._escalate(
                    db,
                    claim.authorization_id,
                    claim.booking_id,
                    "provider_state_conflict",
                    str(error),
                    log,
                )
            elif (
                void_failed
                and attempts is not None
                and attempts >= self.settings.void_max_attempts
            ):
                await self._escalate(
                    db,
                    claim.authorization_id,
                    claim.booking_id,
                    "void_retries_exhausted",
                    str(error),
                    log,
                    attempts=attempts,
                )
            await db.commit()

    async def _escalate(
        self,
        db: AsyncSession,
        authorization_id: uuid.UUID,
        booking_id: int,
        reason: str,
        detail: str,
        log: Any,
        **extra: Any,
    ) -> None:
        """Flag a hold for manual review and raise an operations alert once."""
        if not await self.store.flag_for_review(db, authorization_id, f"{reason}: {detail}"):
            return
        add_outbox_event(
            db,
            authorization_id,
            AGGREGATE_TYPE,
            HOLD_ESCALATED,
            {
                "authorization_id": str(authorization_id),
                "booking_id": booking_id,
                "reason": reason,
                "detail": detail,
                **extra,
            },
        )
        metrics.record_escalation(reason)
        log.critical("hold_escalated_for_review", reason=reason, detail=detail, **extra)

    async def apply_provider_event(self, event: ProviderEvent) -> str:
        """
        Apply a rail-confirmed capture, void or refund.

        Uses the same conditional transitions as ``resolve``, so replays and
        duplicate deliveries change nothing. Returns a short outcome label.
        """
        if event.reference is None or event.outcome is None:
            return "ignored"

        log = logger.bind(
            provider=event.provider.value,
            event_id=event.event_id,
            event_type=event.event_type,
            reference=event.reference,
        )
        correlation_id = uuid.uuid4()

        async with self.session_factory() as db:
            row = await self.store.find_by_provider_reference(
                db, event.provider.value, event.reference
            )
            if row is None and event.capture_id:
                row = await self.store.find_by_provider_reference(
                    db, event.provider.value, event.capture_id
                )
            if row is None:
                log.warning("provider_event_unmatched")
                return "unmatched"

            log = log.bind(authorization_id=str(row.id), state=row.state)

            if event.outcome is ProviderState.CAPTURED:
                outcome = await self._apply_captured(db, row, event, correlation_id, log)
            elif event.outcome in (ProviderState.VOIDED, ProviderState.EXPIRED):
                outcome = await self._apply_voided(db, row, event, correlation_id, log)
            elif event.outcome is ProviderState.REFUNDED:
                outcome = await self._apply_refunded(db, row, event, correlation_id, log)
            else:
                outcome = "ignored"

            await db.commit()

        log.info("provider_event_applied", outcome=outcome)
        return outcome

    async def _apply_captured(
        self,
        db: AsyncSession,
        row: PaymentAuthorization,
        event: ProviderEvent,
        correlation_id: uuid.UUID,
        log: Any,
    ) -> str:
        if row.state == AuthorizationState.CAPTURED.value:
            if row.provider_capture_id is None and event.capture_id:
                await db.execute(
                    update(PaymentAuthorization)
                    .where(PaymentAuthorization.id == row.id)
                    .values(provider_capture_id=event.capture_id)
                    .execution_options(synchronize_session=False)
                )
            return "duplicate"
        if row.state != AuthorizationState.AUTHORIZED.value:
            await self._escalate(
                db, row.id, row.booking_id, "provider_captured_unexpectedly",
                f"rail reports capture while row is {row.state}", log,
            )
            return "escalated"

        amount_cents = event.amount_cents or row.amount_cents
        moved = await self.store.transition(
            db,
            row.id,
            [AuthorizationState.AUTHORIZED.value],
            AuthorizationState.CAPTURED.value,
            provider_capture_id=event.capture_id,
            captured_amount_cents=amount_cents,
            claim_token=None,
            claimed_decision=None,
            claimed_at=None,
        )
        if not moved:
            return "duplicate"

        booking = await self.bookings.get_booking(db, row.booking_id)
        await self._apply_capture_effects(
            db, booking, row, amount_cents, event.capture_id, correlation_id
        )
        if booking.driver_decision == DriverDecision.DECLINED.value:
            await self._escalate(
                db, row.id, row.booking_id, "provider_captured_after_decline",
                "rail reports capture for a declined booking", log,
            )
        return "captured"

    async def _apply_voided(
        self,
        db: AsyncSession,
        row: PaymentAuthorization,
        event: ProviderEvent,
        correlation_id: uuid.UUID,
        log: Any,
    ) -> str:
        if row.state in (AuthorizationState.VOIDED.value, AuthorizationState.FAILED.value):
            return "duplicate"
        if row.state == AuthorizationState.CAPTURED.value:
            await self._escalate(
                db, row.id, row.booking_id, "provider_voided_after_capture",
                "rail reports void for a captured row", log,
            )
            return "escalated"

        from_state = row.state
        moved = await self.store.transition(
            db,
            row.id,
            [from_state],
            AuthorizationState.VOIDED.value,
            claim_token=None,
            claimed_decision=None,
            claimed_at=None,
        )
        if not moved:
            return "duplicate"
        if from_state == AuthorizationState.CREATED.value:
            return "voided"

        booking = await self.bookings.get_booking(db, row.booking_id)
        status = (
            PaymentStatus.VOIDED
            if booking.driver_decision == DriverDecision.DECLINED.value
            else PaymentStatus.EXPIRED
        )
        await self._apply_release_effects(db, booking, row.id, status, correlation_id)
        if booking.driver_decision == DriverDecision.ACCEPTED.value:
            await self._escalate(
                db, row.id, row.booking_id, "provider_voided_after_accept",
                "rail released a hold the driver accepted", log,
            )
        return "voided"

    async def _apply_refunded(
        self,
        db: AsyncSession,
        row: PaymentAuthorization,
        event: ProviderEvent,
        correlation_id: uuid.UUID,
        log: Any,
    ) -> str:
        if row.state != AuthorizationState.CAPTURED.value or event.amount_cents is None:
            return "ignored"
        # Rails report the cumulative refunded amount; only ever move it forward
        result = await db.execute(
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == row.id,
                PaymentAuthorization.refunded_amount_cents < event.amount_cents,
            )
            .values(refunded_amount_cents=event.amount_cents)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return "duplicate"
        await self.store.record_event(
            db, row.id, "refund_confirmed", {"refunded_cents": event.amount_cents}, correlation_id
        )
        return "refunded"

    async def refund(self, booking_id: int, amount: Optional[Money] = None) -> RefundResult:
        """
        Refund a captured booking, in full unless ``amount`` is given.

        The refundable balance is reserved with a conditional UPDATE before
        the rail call, so concurrent refunds can never exceed the capture.

        Raises:
            NoActiveHold: The booking never had a hold
            InvalidState: Nothing refundable was captured, or the rail cannot
                name the capture to refund
            AmountExceedsAuthorization: Amount exceeds the refundable balance
        """
        correlation_id = uuid.uuid4()
        log = logger.bind(booking_id=booking_id, correlation_id=str(correlation_id))

        async with self.session_factory() as db:
            await self.bookings.get_booking(db, booking_id)
            row = await self.store.get_captured_for_booking(db, booking_id)
            if row is None:
                if await self.store.get_latest_for_booking(db, booking_id) is None:
                    raise NoActiveHold(f"Booking {booking_id} has no payment hold")
                raise InvalidState(f"Booking {booking_id} has no captured payment")

            captured = row.captured_amount_cents or row.amount_cents
            refundable = captured - row.refunded_amount_cents
            if amount is not None and amount.currency != row.currency:
                raise ValidationError(
                    f"Refund currency {amount.currency} does not match {row.currency}"
                )
            amount_cents = amount.cents if amount is not None else refundable
            if refundable <= 0:
                raise InvalidState(f"Booking {booking_id} is already fully refunded")
            if amount_cents <= 0:
                raise ValidationError("Refund amount must be positive")

            refunded_before = row.refunded_amount_cents
            if not await self.store.reserve_refund(db, row.id, amount_cents):
                await db.rollback()
                raise AmountExceedsAuthorization(
                    f"Refund {amount_cents} exceeds refundable {refundable}",
                    booking_id=booking_id,
                )
            await db.commit()

        provider = self.providers.get(row.provider)
        idempotency_key = f"refund-{row.id}-{refunded_before}-{amount_cents}"
        try:
            capture_id = row.provider_capture_id or await self._lookup_capture_id(row, log)
            if capture_id is None:
                raise InvalidState(
                    f"Capture id for booking {booking_id} is unknown; cannot refund",
                    booking_id=booking_id,
                )
            refund_id = await provider.refund(
                capture_id,
                Money(cents=amount_cents, currency=row.currency),
                idempotency_key=idempotency_key,
            )
        except Exception as e:
            async with self.session_factory() as db:
                await self.store.release_refund(db, row.id, amount_cents)
                await self.store.record_event(
                    db,
                    row.id,
                    "refund_failed",
                    {"amount_cents": amount_cents, "error_type": type(e).__name__},
                    correlation_id,
                )
                await db.commit()
            metrics.record_refund(row.provider, "failed")
            log.error("refund_failed", error=str(e))
            raise

        async with self.session_factory() as db:
            booking = await self.bookings.get_booking(db, booking_id)
            add_outbox_event(
                db,
                row.id,
                AGGREGATE_TYPE,
                PAYMENT_REFUNDED,
                {
                    "booking_id": booking_id,
                    "authorization_id": str(row.id),
                    "passenger_id": booking.passenger_id,
                    "refund_id": refund_id,
                    "amount_cents": amount_cents,
                    "currency": row.currency,
                },
            )
            await self.store.record_event(
                db,
                row.id,
                "refund_issued",
                {"refund_id": refund_id, "amount_cents": amount_cents},
                correlation_id,
            )
            await db.commit()

        metrics.record_refund(row.provider, "succeeded")
        log.info("refund_issued", refund_id=refund_id, amount_cents=amount_cents)
        return RefundResult(
            booking_id=booking_id,
            authorization_id=row.id,
            refund_id=refund_id,
            amount_cents=amount_cents,
            total_refunded_cents=refunded_before + amount_cents,
            currency=row.currency,
        )

    async def _lookup_capture_id(self, row: PaymentAuthorization, log: Any) -> Optional[str]:
        """Ask the rail for the capture behind a row settled without one, and keep it."""
        status = await self.providers.get(row.provider).fetch_status(
            row.provider_authorization_id
        )
        if status.capture_id is None:
            log.warning("capture_id_unavailable", provider_state=status.state.value)
            return None

        async with self.session_factory() as db:
            await db.execute(
                update(PaymentAuthorization)
                .where(
                    PaymentAuthorization.id == row.id,
                    PaymentAuthorization.provider_capture_id.is_(None),
                )
                .values(provider_capture_id=status.capture_id)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        log.info("capture_id_recovered", capture_id=status.capture_id)
        return status.capture_id


def _as_noop(result: SettlementResult) -> SettlementResult:
    return SettlementResult(
        booking_id=result.booking_id,
        decision=result.decision,
        state=result.state,
        payment_status=result.payment_status,
        authorization_id=result.authorization_id,
        capture_id=result.capture_id,
        noop=True,
    )
