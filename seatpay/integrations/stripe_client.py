"""
Card rail: Stripe PaymentIntents with manual capture.

Implements:
- Holds via ``capture_method=manual``; "authorize" confirms the payer
  completed client-side confirmation and the intent is ``requires_capture``
- Idempotent create/capture/cancel/refund via Stripe idempotency keys
- Error classification into the settlement taxonomy
- Webhook signature verification
"""
import asyncio
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog

from seatpay.config import Settings
from seatpay.core.errors import (
    AlreadyAuthorized,
    AmountExceedsAuthorization,
    InvalidState,
    NotApproved,
    ProviderRejected,
    ProviderUnavailable,
    SettlementError,
    ValidationError,
)
from seatpay.database.models import Rail
from seatpay.domain.money import Money
from seatpay.integrations.base import (
    AuthorizationResult,
    OrderIntent,
    PaymentProvider,
    ProviderErrorType,
    ProviderOrder,
    ProviderState,
    ProviderStatus,
)
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Card authorizations are held by the issuer for seven days
CARD_HOLD_DURATION = timedelta(days=7)

# Metadata key stamped on an intent once its hold is recorded
AUTHORIZED_MARKER = "seatpay_authorized"

PENDING_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "processing"}
)

INVALID_STATE_CODES = frozenset(
    {"payment_intent_unexpected_state", "charge_already_captured", "charge_already_refunded"}
)
AMOUNT_CODES = frozenset({"amount_too_large"})


class StripeClient(PaymentProvider):
    """
    Wrapper for Stripe API with production-grade error handling.

    The Stripe SDK is synchronous, so each call runs in the default executor
    and is bounded by the provider timeout.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        super().__init__(settings)
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=self.settings.is_test_mode,
        )

    @property
    def rail(self) -> Rail:
        return Rail.CARD

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> ProviderErrorType:
        """Classify Stripe error for retry logic."""
        if isinstance(error, stripe.RateLimitError):
            return ProviderErrorType.RATE_LIMIT
        elif isinstance(
            error,
            (stripe.APIConnectionError, stripe.APIError, stripe.AuthenticationError),
        ):
            return ProviderErrorType.TRANSIENT
        elif isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
            return ProviderErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return ProviderErrorType.TRANSIENT

    def _translate_error(self, error: stripe.StripeError, operation: str) -> SettlementError:
        """Map a Stripe exception onto the settlement taxonomy."""
        error_type = self._classify_error(error)
        code = getattr(error, "code", None)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=code,
            error_message=str(error),
        )
        metrics.record_provider_error(self.rail.value, error_type.value)

        if error_type is not ProviderErrorType.PERMANENT:
            return ProviderUnavailable(str(error), rail=self.rail.value, code=code)
        if code in INVALID_STATE_CODES:
            return InvalidState(str(error), rail=self.rail.value, code=code)
        if code in AMOUNT_CODES:
            return AmountExceedsAuthorization(str(error), rail=self.rail.value, code=code)
        return ProviderRejected(str(error), rail=self.rail.value, code=code)

    async def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a synchronous Stripe SDK call under the shared resilience policy."""

        async def _invoke() -> T:
            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(None, partial(func, *args, **kwargs))
            except stripe.StripeError as e:
                raise self._translate_error(e, operation) from e

        return await self._execute(operation, _invoke)

    async def create_order(
        self,
        amount: Money,
        intent: OrderIntent,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderOrder:
        """
        Create a PaymentIntent the passenger confirms client-side.

        Raises:
            ValidationError: Amount is not positive
            ProviderUnavailable: Stripe unreachable
        """
        self._require_positive(amount)

        logger.info(
            "creating_payment_intent",
            amount_cents=amount.cents,
            currency=amount.currency,
            intent=intent.value,
            idempotency_key=idempotency_key,
        )

        payment_intent = await self._call(
            "create_order",
            stripe.PaymentIntent.create,
            amount=amount.cents,
            currency=amount.currency.lower(),
            capture_method="manual" if intent is OrderIntent.AUTHORIZE else "automatic",
            metadata={k: str(v) for k, v in (metadata or {}).items()},
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            status=payment_intent.status,
        )

        return ProviderOrder(
            order_id=payment_intent.id,
            status=payment_intent.status,
            client_secret=payment_intent.client_secret,
        )

    async def authorize(self, order_id: str) -> AuthorizationResult:
        """
        Confirm the hold exists on a PaymentIntent.

        For cards the hold is placed during client-side confirmation, so
        this verifies the intent reached ``requires_capture`` and stamps its
        metadata. A second call finds the stamp and raises AlreadyAuthorized.

        Raises:
            NotApproved: The payer has not confirmed the intent
            AlreadyAuthorized: The intent was authorized before; carries the
                existing authorization
        """
        payment_intent = await self._call(
            "authorize", stripe.PaymentIntent.retrieve, order_id
        )
        status = payment_intent.status

        if status in PENDING_STATUSES:
            raise NotApproved(
                f"PaymentIntent {order_id} is {status}", rail=self.rail.value
            )
        if status != "requires_capture":
            raise InvalidState(
                f"PaymentIntent {order_id} is {status}", rail=self.rail.value
            )

        created = datetime.fromtimestamp(payment_intent.created, tz=timezone.utc)
        result = AuthorizationResult(
            authorization_id=payment_intent.id,
            expires_at=created + CARD_HOLD_DURATION,
            status=status,
        )
        if (payment_intent.metadata or {}).get(AUTHORIZED_MARKER):
            raise AlreadyAuthorized(
                f"PaymentIntent {order_id} was already authorized",
                authorization=result,
                rail=self.rail.value,
            )

        await self._call(
            "authorize",
            stripe.PaymentIntent.modify,
            order_id,
            metadata={AUTHORIZED_MARKER: "true"},
        )
        logger.info("payment_intent_authorized", payment_intent_id=order_id)
        return result

    async def capture(
        self,
        authorization_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Capture a held PaymentIntent; returns the charge id."""
        kwargs: Dict[str, Any] = {}
        if amount is not None:
            self._require_positive(amount)
            kwargs["amount_to_capture"] = amount.cents
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key

        logger.info(
            "capturing_payment_intent",
            payment_intent_id=authorization_id,
            amount_cents=amount.cents if amount else None,
        )
        payment_intent = await self._call(
            "capture", stripe.PaymentIntent.capture, authorization_id, **kwargs
        )
        if payment_intent.status != "succeeded":
            raise InvalidState(
                f"PaymentIntent {authorization_id} is {payment_intent.status} after capture",
                rail=self.rail.value,
            )

        capture_id = _charge_id(payment_intent) or payment_intent.id
        logger.info(
            "payment_intent_captured",
            payment_intent_id=authorization_id,
            capture_id=capture_id,
        )
        return capture_id

    async def void(self, authorization_id: str, idempotency_key: Optional[str] = None) -> None:
        """Cancel a PaymentIntent that has not been captured."""
        kwargs: Dict[str, Any] = {}
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key

        logger.info("cancelling_payment_intent", payment_intent_id=authorization_id)
        await self._call("void", stripe.PaymentIntent.cancel, authorization_id, **kwargs)
        logger.info("payment_intent_cancelled", payment_intent_id=authorization_id)

    async def refund(
        self,
        capture_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Create a refund against a charge (or intent, when no charge id was kept)."""
        kwargs: Dict[str, Any] = {}
        if capture_id.startswith("pi_"):
            kwargs["payment_intent"] = capture_id
        else:
            kwargs["charge"] = capture_id
        if amount is not None:
            self._require_positive(amount)
            kwargs["amount"] = amount.cents
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key

        logger.info(
            "creating_refund",
            capture_id=capture_id,
            amount_cents=amount.cents if amount else None,
        )
        refund = await self._call("refund", stripe.Refund.create, **kwargs)
        logger.info("refund_created", refund_id=refund.id, status=refund.status)
        return refund.id

    async def fetch_status(self, authorization_id: str) -> ProviderStatus:
        payment_intent = await self._call(
            "fetch_status", stripe.PaymentIntent.retrieve, authorization_id
        )
        status = payment_intent.status
        if status == "requires_capture":
            state = ProviderState.AUTHORIZED
        elif status == "succeeded":
            state = ProviderState.CAPTURED
        elif status == "canceled":
            if getattr(payment_intent, "cancellation_reason", None) == "automatic":
                state = ProviderState.EXPIRED
            else:
                state = ProviderState.VOIDED
        elif status in PENDING_STATUSES:
            state = ProviderState.PENDING
        else:
            state = ProviderState.UNKNOWN

        return ProviderStatus(
            state=state,
            authorization_id=payment_intent.id,
            capture_id=_charge_id(payment_intent) if state is ProviderState.CAPTURED else None,
            amount_cents=payment_intent.amount_received or payment_intent.amount,
            raw_status=status,
        )

    def construct_webhook_event(self, payload: bytes, signature: str) -> stripe.Event:
        """
        Verify a Stripe webhook signature and parse the event.

        Raises:
            ValidationError: Signature or payload invalid
        """
        try:
            return stripe.Webhook.construct_event(
                payload, signature, self.settings.stripe_webhook_secret
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_webhook_signature_invalid", error=str(e))
            raise ValidationError("Invalid Stripe webhook signature")
        except ValueError as e:
            logger.warning("stripe_webhook_payload_invalid", error=str(e))
            raise ValidationError("Invalid Stripe webhook payload")


def _charge_id(payment_intent: Any) -> Optional[str]:
    """Charge id from ``latest_charge``, which may be expanded or a bare id."""
    charge = getattr(payment_intent, "latest_charge", None)
    if charge is None:
        return None
    if isinstance(charge, str):
        return charge
    return getattr(charge, "id", None)
