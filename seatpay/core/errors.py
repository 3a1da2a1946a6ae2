"""
Settlement error taxonomy.

Every error carries whether a caller may retry it and a passenger-safe
message. Raw provider text stays in ``detail`` and only ever reaches logs.
"""
from typing import Any, Dict, Optional

GENERIC_PUBLIC_MESSAGE = (
    "We couldn't complete the payment step. Please try again, "
    "or contact support if the problem continues."
)


class SettlementError(Exception):
    """Base exception for payment settlement errors."""

    retryable: bool = False
    public_message: str = GENERIC_PUBLIC_MESSAGE
    code: str = "settlement_error"

    def __init__(self, detail: str = "", **context: Any):
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Public representation for API responses."""
        return {"error": self.code, "message": self.public_message, "retryable": self.retryable}


class ValidationError(SettlementError):
    """Bad input, rejected before any provider call."""

    code = "validation_error"
    public_message = "The payment request is invalid."


class BookingNotFound(ValidationError):
    code = "booking_not_found"
    public_message = "Booking not found."


class AuthorizationNotFound(ValidationError):
    code = "authorization_not_found"
    public_message = "Payment hold not found."


class EarningNotFound(ValidationError):
    code = "earning_not_found"
    public_message = "Earning not found."


class AmountExceedsAuthorization(ValidationError):
    code = "amount_exceeds_authorization"
    public_message = "The requested amount is larger than the held amount."


class InsufficientAvailableEarnings(ValidationError):
    """Requested payout cannot be covered exactly by available earnings."""

    code = "insufficient_available_earnings"
    public_message = "Requested payout exceeds available earnings."

    def __init__(self, detail: str = "", available_cents: int = 0, **context: Any):
        super().__init__(detail, available_cents=available_cents, **context)
        self.available_cents = available_cents


class ProviderUnavailable(SettlementError):
    """Network, timeout, auth or 5xx failure talking to a rail."""

    retryable = True
    code = "provider_unavailable"


class ProviderRejected(SettlementError):
    """The rail refused the operation definitively (declined card, bad request)."""

    code = "provider_rejected"
    public_message = "The payment provider declined this payment."


class InvalidState(SettlementError):
    """Operation does not apply to the current authorization state."""

    code = "invalid_state"
    public_message = "This payment can no longer be changed."


class NotApproved(InvalidState):
    """Payer has not approved the order yet."""

    code = "not_approved"
    public_message = "The payment has not been approved yet."


class AlreadyAuthorized(InvalidState):
    """
    Authorization already exists for the order.

    Rails attach the existing ``authorization`` result when they can recover
    it, so the coordinator can still finish its own bookkeeping.
    """

    code = "already_authorized"
    public_message = "This payment is already authorized."

    def __init__(self, detail: str = "", authorization: Optional[Any] = None, **context: Any):
        super().__init__(detail, **context)
        self.authorization = authorization


class ResponseWindowClosed(InvalidState):
    code = "response_window_closed"
    public_message = "The response window for this booking has closed."


class DuplicateHold(SettlementError):
    code = "duplicate_hold"
    public_message = "This booking already has a payment in progress."


class NoActiveHold(SettlementError):
    code = "no_active_hold"
    public_message = "No payment hold exists for this booking."


class ResolutionInProgress(SettlementError):
    """Another resolver owns the authorization and has not finished yet."""

    retryable = True
    code = "resolution_in_progress"
