"""
Tests for the payment record store's conditional transitions.
"""
import uuid
from datetime import timedelta
from typing import Any

import pytest

from seatpay.core.errors import DuplicateHold
from seatpay.core.store import PaymentRecordStore
from seatpay.database.models import (
    AuthorizationState,
    Booking,
    DriverDecision,
    PaymentAuthorization,
    utcnow,
)


def _authorization(booking_id: int, state: str = "created", **values: Any) -> PaymentAuthorization:
    return PaymentAuthorization(
        id=uuid.uuid4(),
        booking_id=booking_id,
        provider="card",
        provider_order_id=f"pi_{uuid.uuid4().hex[:12]}",
        amount_cents=3275,
        currency="CAD",
        state=state,
        **values,
    )


async def _insert(session_factory: Any, row: PaymentAuthorization) -> PaymentAuthorization:
    async with session_factory() as db:
        db.add(row)
        await db.commit()
    return row


class TestPaymentRecordStore:
    """Test suite for PaymentRecordStore."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_active_hold_rejected(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test the partial unique index allows one active hold per booking."""
        booking = await make_booking()
        store = PaymentRecordStore()

        async with session_factory() as db:
            await store.add_created(db, _authorization(booking.id))
            await db.commit()

        async with session_factory() as db:
            with pytest.raises(DuplicateHold):
                await store.add_created(db, _authorization(booking.id))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_terminal_rows_do_not_block_new_hold(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test failed and voided attempts stay but allow a retry."""
        booking = await make_booking()
        store = PaymentRecordStore()
        await _insert(session_factory, _authorization(booking.id, state="failed"))
        await _insert(session_factory, _authorization(booking.id, state="voided"))

        async with session_factory() as db:
            row = await store.add_created(db, _authorization(booking.id))
            await db.commit()

        async with session_factory() as db:
            active = await store.get_active_for_booking(db, booking.id)
        assert active is not None
        assert active.id == row.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transition_only_from_expected_state(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test a transition from the wrong state moves nothing."""
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(session_factory, _authorization(booking.id, state="voided"))

        async with session_factory() as db:
            moved = await store.transition(
                db, row.id, [AuthorizationState.AUTHORIZED.value], AuthorizationState.CAPTURED.value
            )
            await db.commit()

        assert moved is False
        async with session_factory() as db:
            assert (await store.get_authorization(db, row.id)).state == "voided"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, session_factory: Any, make_booking: Any) -> None:
        """Test only one resolver can claim an authorized row."""
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(session_factory, _authorization(booking.id, state="authorized"))
        now = utcnow()
        ttl = timedelta(minutes=5)

        async with session_factory() as db:
            first = await store.claim(db, row.id, "token-a", "accept", now, ttl)
            await db.commit()
        async with session_factory() as db:
            second = await store.claim(db, row.id, "token-b", "decline", now, ttl)
            await db.commit()

        assert first is True
        assert second is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_claim_can_be_taken_over(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test a claim older than its TTL is treated as abandoned."""
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(session_factory, _authorization(booking.id, state="authorized"))
        ttl = timedelta(minutes=5)
        then = utcnow() - timedelta(minutes=10)

        async with session_factory() as db:
            assert await store.claim(db, row.id, "token-a", "accept", then, ttl)
            await db.commit()
        async with session_factory() as db:
            assert await store.claim(db, row.id, "token-b", "expire", utcnow(), ttl)
            await db.commit()

        async with session_factory() as db:
            # The original holder can no longer finish
            done = await store.complete_claimed(
                db, row.id, "token-a", AuthorizationState.CAPTURED.value
            )
            await db.commit()
        assert done is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_claim_counts_void_attempts(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test failed voids are counted and the row stays authorized."""
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(session_factory, _authorization(booking.id, state="authorized"))
        ttl = timedelta(minutes=5)

        for attempt in (1, 2):
            async with session_factory() as db:
                await store.claim(db, row.id, f"token-{attempt}", "decline", utcnow(), ttl)
                attempts = await store.release_claim(
                    db, row.id, f"token-{attempt}", "rail down", void_failed=True
                )
                await db.commit()
            assert attempts == attempt

        async with session_factory() as db:
            refreshed = await store.get_authorization(db, row.id)
        assert refreshed.state == "authorized"
        assert refreshed.claim_token is None
        assert refreshed.last_error == "rail down"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_with_lost_token_returns_none(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(session_factory, _authorization(booking.id, state="authorized"))

        async with session_factory() as db:
            assert await store.release_claim(db, row.id, "not-mine", "boom") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_flag_for_review_only_once(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test escalation flags a row a single time."""
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(session_factory, _authorization(booking.id, state="authorized"))

        async with session_factory() as db:
            assert await store.flag_for_review(db, row.id, "first") is True
            assert await store.flag_for_review(db, row.id, "second") is False
            await db.commit()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserve_refund_never_exceeds_capture(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test refund reservations are bounded by the captured amount."""
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(
            session_factory,
            _authorization(booking.id, state="captured", captured_amount_cents=3000),
        )

        async with session_factory() as db:
            assert await store.reserve_refund(db, row.id, 2000) is True
            assert await store.reserve_refund(db, row.id, 1001) is False
            assert await store.reserve_refund(db, row.id, 1000) is True
            await db.commit()

        async with session_factory() as db:
            assert (await store.get_authorization(db, row.id)).refunded_amount_cents == 3000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_holds_boundary_is_inclusive(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test a deadline equal to now is due, one a second later is not."""
        now = utcnow()
        due = await make_booking()
        not_due = await make_booking()
        decided = await make_booking()
        store = PaymentRecordStore()

        for booking, deadline, decision in (
            (due, now, DriverDecision.NONE),
            (not_due, now + timedelta(seconds=1), DriverDecision.NONE),
            (decided, now - timedelta(hours=1), DriverDecision.DECLINED),
        ):
            await _insert(session_factory, _authorization(booking.id, state="authorized"))
            async with session_factory() as db:
                row = await db.get(Booking, booking.id)
                row.response_deadline = deadline
                row.driver_decision = decision.value
                await db.commit()

        async with session_factory() as db:
            expired = await store.find_expired_holds(db, now, limit=10)
            declines = await store.find_pending_declines(db, limit=10)

        assert [row.booking_id for row in expired] == [due.id]
        assert [row.booking_id for row in declines] == [decided.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_by_provider_reference(
        self, session_factory: Any, make_booking: Any
    ) -> None:
        """Test order, authorization and capture ids all map back to the row."""
        booking = await make_booking()
        store = PaymentRecordStore()
        row = await _insert(
            session_factory,
            _authorization(
                booking.id,
                state="captured",
                provider_authorization_id="pi_auth",
                provider_capture_id="ch_capture",
            ),
        )

        async with session_factory() as db:
            for reference in (row.provider_order_id, "pi_auth", "ch_capture"):
                found = await store.find_by_provider_reference(db, "card", reference)
                assert found is not None and found.id == row.id
            assert await store.find_by_provider_reference(db, "wallet", "pi_auth") is None
