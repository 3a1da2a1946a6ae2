"""
Tests for the expiry sweeper worker.
"""
import asyncio
from datetime import timedelta
from typing import Any

import pytest

from seatpay.core.errors import ProviderUnavailable
from seatpay.core.notifications import PAYMENT_RELEASED
from seatpay.core.settlement import Decision
from seatpay.database.models import (
    Booking,
    DriverDecision,
    Earning,
    OutboxEvent,
    PaymentAuthorization,
    PaymentStatus,
    Rail,
    WorkerHeartbeat,
    utcnow,
)
from seatpay.domain.money import Money
from seatpay.monitoring.health import SWEEPER_WORKER_NAME
from seatpay.workers.expiry_sweeper import ExpirySweeper


@pytest.fixture
def sweeper(engine: Any, coordinator: Any, session_factory: Any, settings: Any) -> ExpirySweeper:
    return ExpirySweeper(engine, coordinator, session_factory=session_factory, settings=settings)


class TestExpirySweeper:
    """Test suite for ExpirySweeper.run_once."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unanswered_hold_is_released(
        self, sweeper: ExpirySweeper, card: Any, make_booking: Any, authorized_hold: Any,
        fetch: Any,
    ) -> None:
        """Test a hold nobody answered is voided once the window closes."""
        booking = await make_booking()
        approval = await authorized_hold(booking)

        before = await sweeper.run_once(now=approval.response_deadline - timedelta(seconds=1))
        assert before.expired == 0
        assert card.calls["void"] == []

        report = await sweeper.run_once(now=approval.response_deadline)

        assert report.expired == 1
        assert report.failures == []
        assert (await fetch(PaymentAuthorization, approval.authorization_id)).state == "voided"
        assert (await fetch(Booking, booking.id)).payment_status == PaymentStatus.EXPIRED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_after_window_expires_without_earning(
        self, sweeper: ExpirySweeper, card: Any, make_booking: Any, authorized_hold: Any,
        fetch: Any, fetch_all: Any,
    ) -> None:
        """Test a sweep a minute past the window releases the hold and pays nobody."""
        booking = await make_booking()
        approval = await authorized_hold(booking)

        report = await sweeper.run_once(now=approval.response_deadline + timedelta(minutes=1))

        assert report.expired == 1
        assert len(card.calls["void"]) == 1
        assert (await fetch(PaymentAuthorization, approval.authorization_id)).state == "voided"
        refreshed = await fetch(Booking, booking.id)
        assert refreshed.payment_status == PaymentStatus.EXPIRED.value
        assert refreshed.driver_decision == DriverDecision.NONE.value
        assert await fetch_all(Earning) == []
        assert [e.event_type for e in await fetch_all(OutboxEvent)] == [PAYMENT_RELEASED]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_capture_is_retried_not_expired(
        self, sweeper: ExpirySweeper, engine: Any, card: Any, make_booking: Any,
        authorized_hold: Any, fetch: Any, fetch_all: Any,
    ) -> None:
        """Test an accepted hold whose capture failed is captured later, never voided."""
        booking = await make_booking()
        approval = await authorized_hold(booking)
        deadline = approval.response_deadline
        card.fail("capture", ProviderUnavailable("stripe down"), ProviderUnavailable("still down"))
        with pytest.raises(ProviderUnavailable):
            await engine.resolve(booking.id, Decision.ACCEPT, now=deadline - timedelta(minutes=1))

        report = await sweeper.run_once(now=deadline)

        assert report.expired == 0
        assert report.accepts_retried == 0
        assert report.failures[0]["kind"] == "accept_retry"
        assert card.calls["void"] == []
        assert (await fetch(PaymentAuthorization, approval.authorization_id)).state == (
            "authorized"
        )
        refreshed = await fetch(Booking, booking.id)
        assert refreshed.driver_decision == DriverDecision.ACCEPTED.value
        assert refreshed.payment_status == PaymentStatus.AUTHORIZED.value

        retry = await sweeper.run_once(now=deadline + timedelta(minutes=1))

        assert retry.accepts_retried == 1
        assert retry.expired == 0
        assert len(card.calls["capture"]) == 3
        assert card.calls["void"] == []
        assert (await fetch(Booking, booking.id)).payment_status == PaymentStatus.CAPTURED.value
        assert len(await fetch_all(Earning)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_accepted_hold_is_left_alone(
        self, sweeper: ExpirySweeper, engine: Any, card: Any, make_booking: Any,
        authorized_hold: Any,
    ) -> None:
        booking = await make_booking()
        approval = await authorized_hold(booking)
        await engine.resolve(booking.id, Decision.ACCEPT)

        report = await sweeper.run_once(now=approval.response_deadline + timedelta(hours=1))

        assert report.expired == 0
        assert card.calls["void"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_decline_is_retried(
        self, sweeper: ExpirySweeper, engine: Any, card: Any, make_booking: Any,
        authorized_hold: Any, fetch: Any,
    ) -> None:
        """Test a decline whose void failed is finished by the next tick."""
        booking = await make_booking()
        await authorized_hold(booking)
        card.fail("void", ProviderUnavailable("stripe down"))
        with pytest.raises(ProviderUnavailable):
            await engine.resolve(booking.id, Decision.DECLINE)

        report = await sweeper.run_once()

        assert report.declines_retried == 1
        assert len(card.calls["void"]) == 2
        assert (await fetch(Booking, booking.id)).payment_status == PaymentStatus.VOIDED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_tick(
        self, sweeper: ExpirySweeper, card: Any, wallet: Any, make_booking: Any,
        authorized_hold: Any, fetch: Any,
    ) -> None:
        """Test the sweep carries on past an item whose void fails."""
        first = await make_booking()
        second = await make_booking()
        first_approval = await authorized_hold(first, rail=Rail.CARD)
        second_approval = await authorized_hold(second, rail=Rail.WALLET)
        card.fail("void", ProviderUnavailable("stripe down"))
        later = max(first_approval.response_deadline, second_approval.response_deadline)

        report = await sweeper.run_once(now=later)

        assert report.expired == 1
        assert len(report.failures) == 1
        assert report.failures[0]["booking_id"] == first.id
        assert (await fetch(PaymentAuthorization, first_approval.authorization_id)).state == (
            "authorized"
        )
        assert (await fetch(PaymentAuthorization, second_approval.authorization_id)).state == (
            "voided"
        )

        # The next tick picks it up again
        retry = await sweeper.run_once(now=later)
        assert retry.expired == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandoned_orders_fail(
        self, sweeper: ExpirySweeper, coordinator: Any, make_booking: Any, fetch: Any,
        settings: Any,
    ) -> None:
        booking = await make_booking()
        hold = await coordinator.open_hold(booking.id, Money.of("32.75", "CAD"), Rail.WALLET)

        report = await sweeper.run_once(
            now=utcnow() + timedelta(seconds=settings.approval_timeout_seconds + 1)
        )

        assert report.abandoned == 1
        assert (await fetch(PaymentAuthorization, hold.authorization_id)).state == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_heartbeat_recorded(self, sweeper: ExpirySweeper, fetch: Any) -> None:
        """Test every tick leaves a heartbeat for the health check."""
        now = utcnow()

        await sweeper.run_once(now=now)

        heartbeat = await fetch(WorkerHeartbeat, SWEEPER_WORKER_NAME)
        assert heartbeat.last_beat_at == now
        assert heartbeat.details["expired"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, sweeper: ExpirySweeper, mocker: Any) -> None:
        """Test the loop exits promptly once asked to stop."""
        stop_event = asyncio.Event()
        run_once = mocker.patch.object(sweeper, "run_once", side_effect=lambda: stop_event.set())

        await asyncio.wait_for(sweeper.run(stop_event), timeout=2)

        assert run_once.call_count == 1
