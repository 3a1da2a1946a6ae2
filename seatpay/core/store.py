"""
Payment record store.

Durable ledger of hold attempts keyed by booking. Mutual exclusion lives
here, in the database: the partial unique index allows one active hold per
booking, and every state change is a conditional UPDATE whose row count
tells the caller whether it won.

Methods take the caller's session so that a settlement can change the
authorization, the booking, the earning and the outbox in one transaction.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from seatpay.core.errors import DuplicateHold
from seatpay.database.models import (
    ACTIVE_STATES,
    AuthorizationState,
    Booking,
    DriverDecision,
    PaymentAuthorization,
    PaymentEvent,
    WorkerHeartbeat,
    utcnow,
)

logger = structlog.get_logger(__name__)


class PaymentRecordStore:
    """Queries and compare-and-swap transitions on ``payment_authorizations``."""

    async def get_authorization(
        self, db: AsyncSession, authorization_id: uuid.UUID
    ) -> Optional[PaymentAuthorization]:
        result = await db.execute(
            select(PaymentAuthorization).where(PaymentAuthorization.id == authorization_id)
        )
        return result.scalar_one_or_none()

    async def get_active_for_booking(
        self, db: AsyncSession, booking_id: int
    ) -> Optional[PaymentAuthorization]:
        """The sole created/authorized row for a booking, if any."""
        result = await db.execute(
            select(PaymentAuthorization).where(
                PaymentAuthorization.booking_id == booking_id,
                PaymentAuthorization.state.in_(ACTIVE_STATES),
            )
        )
        return result.scalar_one_or_none()

    async def get_latest_for_booking(
        self, db: AsyncSession, booking_id: int
    ) -> Optional[PaymentAuthorization]:
        result = await db.execute(
            select(PaymentAuthorization)
            .where(PaymentAuthorization.booking_id == booking_id)
            .order_by(PaymentAuthorization.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_captured_for_booking(
        self, db: AsyncSession, booking_id: int
    ) -> Optional[PaymentAuthorization]:
        result = await db.execute(
            select(PaymentAuthorization).where(
                PaymentAuthorization.booking_id == booking_id,
                PaymentAuthorization.state == AuthorizationState.CAPTURED.value,
            )
        )
        return result.scalar_one_or_none()

    async def find_by_provider_reference(
        self, db: AsyncSession, provider: str, reference: str
    ) -> Optional[PaymentAuthorization]:
        """Match a rail id (order, authorization or capture) back to its row."""
        result = await db.execute(
            select(PaymentAuthorization)
            .where(
                PaymentAuthorization.provider == provider,
                or_(
                    PaymentAuthorization.provider_order_id == reference,
                    PaymentAuthorization.provider_authorization_id == reference,
                    PaymentAuthorization.provider_capture_id == reference,
                ),
            )
            .order_by(PaymentAuthorization.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_created(
        self, db: AsyncSession, authorization: PaymentAuthorization
    ) -> PaymentAuthorization:
        """
        Insert a new ``created`` row.

        Raises:
            DuplicateHold: Another active row for the booking won the race
        """
        authorization.state = AuthorizationState.CREATED.value
        db.add(authorization)
        try:
            await db.flush()
        except IntegrityError as e:
            await db.rollback()
            logger.warning(
                "duplicate_hold_rejected_by_index",
                booking_id=authorization.booking_id,
                error=str(e.orig),
            )
            raise DuplicateHold(
                f"Booking {authorization.booking_id} already has an active hold",
                booking_id=authorization.booking_id,
            )
        return authorization

    async def transition(
        self,
        db: AsyncSession,
        authorization_id: uuid.UUID,
        from_states: Iterable[str],
        to_state: str,
        **values: Any,
    ) -> bool:
        """
        Conditional state change.

        Returns:
            bool: True when this caller moved the row, False when it was no
            longer in one of ``from_states``
        """
        stmt = (
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization_id,
                PaymentAuthorization.state.in_(list(from_states)),
            )
            .values(state=to_state, **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def claim(
        self,
        db: AsyncSession,
        authorization_id: uuid.UUID,
        token: str,
        decision: str,
        now: datetime,
        ttl: timedelta,
    ) -> bool:
        """
        Take ownership of an authorized row before calling the rail.

        A claim older than ``ttl`` is considered abandoned (its resolver
        crashed mid-call) and may be taken over.
        """
        stmt = (
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization_id,
                PaymentAuthorization.state == AuthorizationState.AUTHORIZED.value,
                or_(
                    PaymentAuthorization.claim_token.is_(None),
                    PaymentAuthorization.claimed_at < now - ttl,
                ),
            )
            .values(claim_token=token, claimed_decision=decision, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def release_claim(
        self,
        db: AsyncSession,
        authorization_id: uuid.UUID,
        token: str,
        error: str,
        void_failed: bool = False,
    ) -> Optional[int]:
        """
        Give the row back after a failed provider call.

        Returns:
            Optional[int]: Void attempts so far, or None if the claim had
            already been lost
        """
        values: Dict[str, Any] = {
            "claim_token": None,
            "claimed_decision": None,
            "claimed_at": None,
            "last_error": error[:2000],
        }
        if void_failed:
            values["void_attempts"] = PaymentAuthorization.void_attempts + 1
        stmt = (
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization_id,
                PaymentAuthorization.claim_token == token,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            return None
        refreshed = await db.execute(
            select(PaymentAuthorization.void_attempts).where(
                PaymentAuthorization.id == authorization_id
            )
        )
        return refreshed.scalar_one()

    async def complete_claimed(
        self,
        db: AsyncSession,
        authorization_id: uuid.UUID,
        token: str,
        to_state: str,
        **values: Any,
    ) -> bool:
        """Finish a claimed settlement; only the claim holder can succeed."""
        stmt = (
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization_id,
                PaymentAuthorization.state == AuthorizationState.AUTHORIZED.value,
                PaymentAuthorization.claim_token == token,
            )
            .values(
                state=to_state,
                claim_token=None,
                claimed_decision=None,
                claimed_at=None,
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def flag_for_review(
        self, db: AsyncSession, authorization_id: uuid.UUID, reason: str
    ) -> bool:
        """Mark a row for manual review; True only the first time."""
        stmt = (
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization_id,
                PaymentAuthorization.needs_review.is_(False),
            )
            .values(needs_review=True, last_error=reason[:2000])
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def reserve_refund(
        self, db: AsyncSession, authorization_id: uuid.UUID, amount_cents: int
    ) -> bool:
        """Add to the refunded total unless that would exceed the captured amount."""
        stmt = (
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization_id,
                PaymentAuthorization.state == AuthorizationState.CAPTURED.value,
                PaymentAuthorization.refunded_amount_cents + amount_cents
                <= PaymentAuthorization.captured_amount_cents,
            )
            .values(
                refunded_amount_cents=PaymentAuthorization.refunded_amount_cents + amount_cents
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def release_refund(
        self, db: AsyncSession, authorization_id: uuid.UUID, amount_cents: int
    ) -> None:
        stmt = (
            update(PaymentAuthorization)
            .where(
                PaymentAuthorization.id == authorization_id,
                PaymentAuthorization.refunded_amount_cents >= amount_cents,
            )
            .values(
                refunded_amount_cents=PaymentAuthorization.refunded_amount_cents - amount_cents
            )
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

    async def find_expired_holds(
        self, db: AsyncSession, now: datetime, limit: int
    ) -> List[PaymentAuthorization]:
        """
        Authorized holds whose response window has closed without a decision.

        The deadline boundary is inclusive: a deadline equal to ``now`` is due.
        """
        result = await db.execute(
            select(PaymentAuthorization)
            .join(Booking, Booking.id == PaymentAuthorization.booking_id)
            .where(
                PaymentAuthorization.state == AuthorizationState.AUTHORIZED.value,
                Booking.response_deadline.is_not(None),
                Booking.response_deadline <= now,
                Booking.driver_decision == DriverDecision.NONE.value,
            )
            .order_by(Booking.response_deadline)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_pending_declines(
        self, db: AsyncSession, limit: int
    ) -> List[PaymentAuthorization]:
        """Holds the driver declined whose void has not gone through yet."""
        result = await db.execute(
            select(PaymentAuthorization)
            .join(Booking, Booking.id == PaymentAuthorization.booking_id)
            .where(
                PaymentAuthorization.state == AuthorizationState.AUTHORIZED.value,
                Booking.driver_decision == DriverDecision.DECLINED.value,
            )
            .order_by(PaymentAuthorization.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_pending_accepts(
        self, db: AsyncSession, limit: int
    ) -> List[PaymentAuthorization]:
        """
        Holds the driver accepted whose capture has not gone through yet.

        Rows flagged for review are left to an operator.
        """
        result = await db.execute(
            select(PaymentAuthorization)
            .join(Booking, Booking.id == PaymentAuthorization.booking_id)
            .where(
                PaymentAuthorization.state == AuthorizationState.AUTHORIZED.value,
                PaymentAuthorization.needs_review.is_(False),
                Booking.driver_decision == DriverDecision.ACCEPTED.value,
            )
            .order_by(PaymentAuthorization.updated_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_abandoned_orders(
        self, db: AsyncSession, created_before: datetime, limit: int
    ) -> List[PaymentAuthorization]:
        """``created`` rows the payer never approved."""
        result = await db.execute(
            select(PaymentAuthorization)
            .where(
                and_(
                    PaymentAuthorization.state == AuthorizationState.CREATED.value,
                    PaymentAuthorization.created_at < created_before,
                )
            )
            .order_by(PaymentAuthorization.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def record_event(
        self,
        db: AsyncSession,
        authorization_id: uuid.UUID,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Append an immutable audit event."""
        db.add(
            PaymentEvent(
                authorization_id=authorization_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id or uuid.uuid4(),
            )
        )

    async def record_heartbeat(
        self,
        db: AsyncSession,
        name: str,
        details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        await db.merge(
            WorkerHeartbeat(name=name, last_beat_at=now or utcnow(), details=details or {})
        )
