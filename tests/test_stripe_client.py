"""
Unit tests for the Stripe card rail.
"""
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
import stripe

from seatpay.core.errors import (
    AlreadyAuthorized,
    AmountExceedsAuthorization,
    InvalidState,
    NotApproved,
    ProviderRejected,
    ProviderUnavailable,
    ValidationError,
)
from seatpay.domain.money import Money
from seatpay.integrations.base import OrderIntent, ProviderState
from seatpay.integrations.stripe_client import (
    AUTHORIZED_MARKER,
    CARD_HOLD_DURATION,
    StripeClient,
)

CREATED_AT = 1_790_000_000


def _intent(status: str, **values: Any) -> MagicMock:
    payment_intent = MagicMock()
    payment_intent.id = values.pop("id", "pi_test_123")
    payment_intent.status = status
    payment_intent.created = CREATED_AT
    payment_intent.client_secret = "pi_test_123_secret_abc"
    payment_intent.amount = 3275
    payment_intent.amount_received = values.pop("amount_received", 0)
    payment_intent.latest_charge = values.pop("latest_charge", None)
    payment_intent.cancellation_reason = values.pop("cancellation_reason", None)
    payment_intent.metadata = values.pop("metadata", {})
    return payment_intent


@pytest.fixture
def client(settings: Any) -> StripeClient:
    return StripeClient(settings)


class TestStripeClient:
    """Test suite for StripeClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_holds_with_manual_capture(
        self, client: StripeClient, mocker: Any
    ) -> None:
        """Test an AUTHORIZE order becomes a manual-capture PaymentIntent."""
        create = mocker.patch(
            "stripe.PaymentIntent.create", return_value=_intent("requires_payment_method")
        )

        order = await client.create_order(
            Money.of("32.75", "CAD"),
            OrderIntent.AUTHORIZE,
            idempotency_key="hold-abc",
            metadata={"booking_id": 42},
        )

        assert order.order_id == "pi_test_123"
        assert order.client_secret == "pi_test_123_secret_abc"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 3275
        assert kwargs["currency"] == "cad"
        assert kwargs["capture_method"] == "manual"
        assert kwargs["idempotency_key"] == "hold-abc"
        assert kwargs["metadata"] == {"booking_id": "42"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_rejects_zero_amount(
        self, client: StripeClient, mocker: Any
    ) -> None:
        create = mocker.patch("stripe.PaymentIntent.create")

        with pytest.raises(ValidationError, match="must be positive"):
            await client.create_order(Money(cents=0, currency="CAD"), OrderIntent.AUTHORIZE, "k")

        create.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authorize_requires_capture(self, client: StripeClient, mocker: Any) -> None:
        """Test the hold expiry is seven days after the intent was created."""
        mocker.patch("stripe.PaymentIntent.retrieve", return_value=_intent("requires_capture"))
        modify = mocker.patch("stripe.PaymentIntent.modify")

        result = await client.authorize("pi_test_123")

        assert result.authorization_id == "pi_test_123"
        modify.assert_called_once_with("pi_test_123", metadata={AUTHORIZED_MARKER: "true"})
        assert result.expires_at == (
            datetime.fromtimestamp(CREATED_AT, tz=timezone.utc) + CARD_HOLD_DURATION
        )
        assert CARD_HOLD_DURATION == timedelta(days=7)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authorize_twice_raises_already_authorized(
        self, client: StripeClient, mocker: Any
    ) -> None:
        """Test a second authorize raises but carries the existing hold."""
        mocker.patch(
            "stripe.PaymentIntent.retrieve",
            side_effect=[
                _intent("requires_capture"),
                _intent("requires_capture", metadata={AUTHORIZED_MARKER: "true"}),
            ],
        )
        modify = mocker.patch("stripe.PaymentIntent.modify")

        first = await client.authorize("pi_test_123")
        with pytest.raises(AlreadyAuthorized) as exc_info:
            await client.authorize("pi_test_123")

        assert exc_info.value.authorization == first
        assert modify.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, error",
        [
            ("requires_payment_method", NotApproved),
            ("requires_action", NotApproved),
            ("canceled", InvalidState),
            ("succeeded", InvalidState),
        ],
    )
    async def test_authorize_unconfirmed_intent(
        self, client: StripeClient, mocker: Any, status: str, error: type
    ) -> None:
        mocker.patch("stripe.PaymentIntent.retrieve", return_value=_intent(status))

        with pytest.raises(error):
            await client.authorize("pi_test_123")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_capture_returns_charge(
        self, client: StripeClient, mocker: Any
    ) -> None:
        capture = mocker.patch(
            "stripe.PaymentIntent.capture",
            return_value=_intent("succeeded", latest_charge="ch_test_1"),
        )

        capture_id = await client.capture(
            "pi_test_123", Money(cents=2000, currency="CAD"), idempotency_key="capture-1"
        )

        assert capture_id == "ch_test_1"
        capture.assert_called_once_with(
            "pi_test_123", amount_to_capture=2000, idempotency_key="capture-1"
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_with_expanded_charge(self, client: StripeClient, mocker: Any) -> None:
        charge = MagicMock()
        charge.id = "ch_expanded"
        mocker.patch(
            "stripe.PaymentIntent.capture",
            return_value=_intent("succeeded", latest_charge=charge),
        )

        assert await client.capture("pi_test_123") == "ch_expanded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, expected",
        [
            (stripe.CardError("Card declined", None, "card_declined"), ProviderRejected),
            (
                stripe.InvalidRequestError(
                    "Unexpected state", None, code="payment_intent_unexpected_state"
                ),
                InvalidState,
            ),
            (
                stripe.InvalidRequestError("Too large", "amount_to_capture", code="amount_too_large"),
                AmountExceedsAuthorization,
            ),
            (stripe.InvalidRequestError("No such intent", "intent"), ProviderRejected),
        ],
    )
    async def test_permanent_errors_are_translated(
        self, client: StripeClient, mocker: Any, error: Exception, expected: type
    ) -> None:
        """Test definitive Stripe errors map onto the taxonomy without retries."""
        capture = mocker.patch("stripe.PaymentIntent.capture", side_effect=error)

        with pytest.raises(expected):
            await client.capture("pi_test_123")

        assert capture.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(
        self, client: StripeClient, mocker: Any, settings: Any
    ) -> None:
        """Test connection errors are retried and surface as ProviderUnavailable."""
        cancel = mocker.patch(
            "stripe.PaymentIntent.cancel",
            side_effect=stripe.APIConnectionError("Network unreachable"),
        )

        with pytest.raises(ProviderUnavailable):
            await client.void("pi_test_123", idempotency_key="void-1")

        assert cancel.call_count == settings.payment_retry_max_attempts

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_then_success(self, client: StripeClient, mocker: Any) -> None:
        cancel = mocker.patch(
            "stripe.PaymentIntent.cancel",
            side_effect=[stripe.APIConnectionError("blip"), _intent("canceled")],
        )

        await client.void("pi_test_123")

        assert cancel.call_count == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "capture_id, key",
        [("ch_test_1", "charge"), ("pi_test_123", "payment_intent")],
    )
    async def test_refund_target(
        self, client: StripeClient, mocker: Any, capture_id: str, key: str
    ) -> None:
        refund = MagicMock()
        refund.id = "re_test_1"
        refund.status = "succeeded"
        create = mocker.patch("stripe.Refund.create", return_value=refund)

        refund_id = await client.refund(capture_id, Money(cents=500, currency="CAD"), "refund-1")

        assert refund_id == "re_test_1"
        kwargs = create.call_args.kwargs
        assert kwargs[key] == capture_id
        assert kwargs["amount"] == 500
        assert kwargs["idempotency_key"] == "refund-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status, reason, state",
        [
            ("requires_capture", None, ProviderState.AUTHORIZED),
            ("succeeded", None, ProviderState.CAPTURED),
            ("canceled", "requested_by_customer", ProviderState.VOIDED),
            ("canceled", "automatic", ProviderState.EXPIRED),
            ("processing", None, ProviderState.PENDING),
        ],
    )
    async def test_fetch_status(
        self, client: StripeClient, mocker: Any, status: str, reason: Any, state: ProviderState
    ) -> None:
        mocker.patch(
            "stripe.PaymentIntent.retrieve",
            return_value=_intent(status, cancellation_reason=reason, latest_charge="ch_test_1"),
        )

        result = await client.fetch_status("pi_test_123")

        assert result.state is state
        assert result.raw_status == status
        if state is ProviderState.CAPTURED:
            assert result.capture_id == "ch_test_1"
        else:
            assert result.capture_id is None


class TestStripeWebhooks:
    """Test suite for webhook signature verification."""

    @pytest.mark.unit
    def test_valid_signature(self, client: StripeClient, mocker: Any, settings: Any) -> None:
        event = MagicMock()
        construct = mocker.patch("stripe.Webhook.construct_event", return_value=event)

        assert client.construct_webhook_event(b"{}", "t=1,v1=abc") is event
        construct.assert_called_once_with(b"{}", "t=1,v1=abc", settings.stripe_webhook_secret)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error",
        [
            stripe.SignatureVerificationError("bad signature", "t=1,v1=abc"),
            ValueError("not json"),
        ],
    )
    def test_invalid_delivery(self, client: StripeClient, mocker: Any, error: Exception) -> None:
        mocker.patch("stripe.Webhook.construct_event", side_effect=error)

        with pytest.raises(ValidationError):
            client.construct_webhook_event(b"{}", "t=1,v1=abc")
