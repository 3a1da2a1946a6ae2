"""
Tests for provider webhook parsing, deduplication and replay.
"""
import json
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from seatpay.core.errors import ProviderUnavailable, ValidationError
from seatpay.database.models import (
    Booking,
    PaymentAuthorization,
    PaymentStatus,
    ProviderWebhookEvent,
    Rail,
)
from seatpay.domain.money import Money
from seatpay.integrations.base import ProviderState
from seatpay.integrations.webhook_handler import (
    WebhookHandler,
    parse_paypal_event,
    parse_stripe_event,
)


def _stripe_event(event_id: str, event_type: str, obj: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
def handler(engine: Any, coordinator: Any, session_factory: Any, settings: Any) -> WebhookHandler:
    return WebhookHandler(engine, coordinator, session_factory=session_factory, settings=settings)


class TestParsers:
    """Test suite for rail payload normalization."""

    @pytest.mark.unit
    def test_stripe_capture(self) -> None:
        event = parse_stripe_event(
            _stripe_event(
                "evt_1",
                "payment_intent.succeeded",
                {"id": "pi_1", "latest_charge": {"id": "ch_1"}, "amount_received": 3275},
            )
        )

        assert event.provider is Rail.CARD
        assert event.outcome is ProviderState.CAPTURED
        assert event.reference == "pi_1"
        assert event.capture_id == "ch_1"
        assert event.amount_cents == 3275

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "reason, outcome",
        [("automatic", ProviderState.EXPIRED), ("requested_by_customer", ProviderState.VOIDED)],
    )
    def test_stripe_cancel(self, reason: str, outcome: ProviderState) -> None:
        event = parse_stripe_event(
            _stripe_event(
                "evt_2", "payment_intent.canceled", {"id": "pi_1", "cancellation_reason": reason}
            )
        )

        assert event.outcome is outcome

    @pytest.mark.unit
    def test_stripe_refund_references_intent(self) -> None:
        event = parse_stripe_event(
            _stripe_event(
                "evt_3",
                "charge.refunded",
                {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 1000},
            )
        )

        assert event.outcome is ProviderState.REFUNDED
        assert event.reference == "pi_1"
        assert event.capture_id == "ch_1"
        assert event.amount_cents == 1000

    @pytest.mark.unit
    def test_stripe_unknown_type(self) -> None:
        event = parse_stripe_event(_stripe_event("evt_4", "customer.created", {"id": "cus_1"}))

        assert event.outcome is None

    @pytest.mark.unit
    def test_paypal_capture(self) -> None:
        event = parse_paypal_event(
            {
                "id": "WH-1",
                "event_type": "PAYMENT.CAPTURE.COMPLETED",
                "resource": {
                    "id": "CAP-1",
                    "amount": {"currency_code": "CAD", "value": "32.75"},
                    "supplementary_data": {"related_ids": {"authorization_id": "AUTH-1"}},
                },
            }
        )

        assert event.provider is Rail.WALLET
        assert event.outcome is ProviderState.CAPTURED
        assert event.reference == "AUTH-1"
        assert event.capture_id == "CAP-1"
        assert event.amount_cents == 3275

    @pytest.mark.unit
    def test_paypal_authorization_references_order(self) -> None:
        event = parse_paypal_event(
            {
                "id": "WH-2",
                "event_type": "PAYMENT.AUTHORIZATION.CREATED",
                "resource": {
                    "id": "AUTH-1",
                    "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
                },
            }
        )

        assert event.outcome is ProviderState.AUTHORIZED
        assert event.reference == "ORDER-1"

    @pytest.mark.unit
    def test_paypal_refund_uses_cumulative_total(self) -> None:
        event = parse_paypal_event(
            {
                "id": "WH-3",
                "event_type": "PAYMENT.CAPTURE.REFUNDED",
                "resource": {
                    "id": "REF-2",
                    "amount": {"currency_code": "CAD", "value": "5.00"},
                    "seller_payable_breakdown": {
                        "total_refunded_amount": {"currency_code": "CAD", "value": "15.00"}
                    },
                    "links": [
                        {"rel": "self", "href": "https://api/v2/payments/refunds/REF-2"},
                        {"rel": "up", "href": "https://api/v2/payments/captures/CAP-1"},
                    ],
                },
            }
        )

        assert event.reference == "CAP-1"
        assert event.capture_id == "CAP-1"
        assert event.amount_cents == 1500


class TestIngest:
    """Test suite for WebhookHandler.ingest."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_duplicate_delivery_recorded_once(
        self, handler: WebhookHandler, fetch_all: Any
    ) -> None:
        """Test a redelivered event is recognised by the unique constraint."""
        payload = _stripe_event("evt_dup", "customer.created", {"id": "cus_1"})

        first = await handler.ingest(Rail.CARD, payload)
        second = await handler.ingest(Rail.CARD, payload)

        assert first["status"] == "processed"
        assert first["outcome"] == "ignored"
        assert second["status"] == "duplicate"
        assert len(await fetch_all(ProviderWebhookEvent)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_id_on_different_rails(
        self, handler: WebhookHandler, fetch_all: Any
    ) -> None:
        await handler.ingest(Rail.CARD, _stripe_event("SAME-1", "customer.created", {}))
        result = await handler.ingest(
            Rail.WALLET, {"id": "SAME-1", "event_type": "CUSTOMER.CREATED", "resource": {}}
        )

        assert result["status"] == "processed"
        assert len(await fetch_all(ProviderWebhookEvent)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_without_id(self, handler: WebhookHandler) -> None:
        with pytest.raises(ValidationError, match="no id"):
            await handler.ingest(Rail.CARD, {"type": "payment_intent.succeeded"})

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authorization_event_confirms_hold(
        self, handler: WebhookHandler, coordinator: Any, make_booking: Any, fetch: Any
    ) -> None:
        """Test the rail's authorization event completes a pending approval."""
        booking = await make_booking()
        hold = await coordinator.open_hold(booking.id, Money.of("32.75", "CAD"), Rail.CARD)

        result = await handler.ingest(
            Rail.CARD,
            _stripe_event(
                "evt_auth",
                "payment_intent.amount_capturable_updated",
                {"id": hold.provider_order_id},
            ),
        )

        assert result["outcome"] == "authorized"
        assert (await fetch(PaymentAuthorization, hold.authorization_id)).state == "authorized"
        assert (await fetch(Booking, booking.id)).payment_status == (
            PaymentStatus.AUTHORIZED.value
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_event_settles_hold(
        self, handler: WebhookHandler, make_booking: Any, authorized_hold: Any, fetch: Any,
        card: Any,
    ) -> None:
        booking = await make_booking()
        approval = await authorized_hold(booking)

        result = await handler.ingest(
            Rail.CARD,
            _stripe_event(
                "evt_cap",
                "payment_intent.succeeded",
                {
                    "id": approval.provider_authorization_id,
                    "latest_charge": "ch_webhook",
                    "amount_received": 3275,
                },
            ),
        )

        assert result["outcome"] == "captured"
        row = await fetch(PaymentAuthorization, approval.authorization_id)
        assert row.state == "captured"
        assert row.provider_capture_id == "ch_webhook"
        assert card.calls["capture"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_processing_is_replayed(
        self, handler: WebhookHandler, engine: Any, mocker: Any, fetch_all: Any
    ) -> None:
        """Test a delivery that failed once is finished by replay."""
        apply = mocker.patch.object(
            engine,
            "apply_provider_event",
            side_effect=[ProviderUnavailable("db busy"), "captured"],
        )
        payload = _stripe_event(
            "evt_retry", "payment_intent.succeeded", {"id": "pi_1", "amount_received": 100}
        )

        result = await handler.ingest(Rail.CARD, payload)

        assert result["status"] == "failed"
        [record] = await fetch_all(ProviderWebhookEvent)
        assert record.processed_at is None
        assert record.processing_attempts == 1
        assert record.last_error.startswith("ProviderUnavailable")

        assert await handler.replay_unprocessed() == 1
        [record] = await fetch_all(ProviderWebhookEvent)
        assert record.processed_at is not None
        assert record.last_error is None
        assert apply.call_count == 2

        # Nothing left to replay
        assert await handler.replay_unprocessed() == 0


class TestSignedDeliveries:
    """Test suite for the per-rail entry points."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_signature_checked_first(
        self, handler: WebhookHandler, card: Any, fetch_all: Any
    ) -> None:
        card.construct_webhook_event = MagicMock(
            side_effect=ValidationError("Invalid Stripe webhook signature")
        )

        with pytest.raises(ValidationError):
            await handler.handle_stripe(b'{"id": "evt_1"}', "t=1,v1=bad")

        assert await fetch_all(ProviderWebhookEvent) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stripe_verified_delivery(self, handler: WebhookHandler, card: Any) -> None:
        card.construct_webhook_event = MagicMock()
        body = json.dumps(_stripe_event("evt_ok", "customer.created", {})).encode()

        result = await handler.handle_stripe(body, "t=1,v1=good")

        assert result["status"] == "processed"
        card.construct_webhook_event.assert_called_once_with(body, "t=1,v1=good")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paypal_bad_json(self, handler: WebhookHandler, wallet: Any) -> None:
        wallet.verify_webhook = AsyncMock()

        with pytest.raises(ValidationError, match="Invalid PayPal webhook payload"):
            await handler.handle_paypal({}, b"not json")

        wallet.verify_webhook.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paypal_verified_delivery(self, handler: WebhookHandler, wallet: Any) -> None:
        wallet.verify_webhook = AsyncMock()
        body = {"id": "WH-9", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {}}

        result = await handler.handle_paypal({"paypal-transmission-id": "tx"}, json.dumps(body).encode())

        assert result["status"] == "processed"
        wallet.verify_webhook.assert_awaited_once_with({"paypal-transmission-id": "tx"}, body)
