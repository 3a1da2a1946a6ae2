"""
Pydantic schemas for API request/response models.
"""
from datetime import date, datetime
from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from seatpay.database.models import PayoutMethod, Rail


class OpenHoldRequest(BaseModel):
    """Request schema for opening a hold on a booking."""

    booking_id: int = Field(..., gt=0, description="Ride booking identifier")
    amount_cents: int = Field(..., gt=0, description="Amount to hold in cents")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., CAD)")
    rail: Rail = Field(..., description="Payment rail: card or wallet")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"booking_id": 42, "amount_cents": 3275, "currency": "CAD", "rail": "card"}
            ]
        }
    }


class HoldResponse(BaseModel):
    """Response schema for an opened hold."""

    authorization_id: UUID = Field(..., description="Authorization ID")
    provider_order_id: str = Field(..., description="Order or PaymentIntent ID on the rail")
    approval_url: Optional[str] = Field(default=None, description="Wallet approval redirect")
    client_secret: Optional[str] = Field(default=None, description="Card client secret")


class ConfirmApprovalRequest(BaseModel):
    provider_order_id: str = Field(..., min_length=1, description="Order ID the payer approved")


class ApprovalResponse(BaseModel):
    authorization_id: UUID
    provider_authorization_id: str
    expires_at: Optional[datetime] = Field(default=None, description="Rail hold expiry")
    response_deadline: datetime = Field(..., description="Driver must respond before this")


class HoldStatusResponse(BaseModel):
    """Response schema for a stored hold."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Authorization ID")
    booking_id: int
    provider: str = Field(..., description="Payment rail")
    state: str = Field(..., description="Hold state")
    amount_cents: int
    currency: str
    provider_order_id: str
    provider_authorization_id: Optional[str] = None
    provider_capture_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    captured_amount_cents: Optional[int] = None
    refunded_amount_cents: int = 0
    needs_review: bool = False
    created_at: datetime
    updated_at: datetime


class ProviderStatusResponse(BaseModel):
    state: str = Field(..., description="Normalized rail-side state")
    authorization_id: str
    capture_id: Optional[str] = None
    amount_cents: Optional[int] = None
    raw_status: str = Field(..., description="Status as reported by the rail")


class ResolveRequest(BaseModel):
    """Driver decision on a booking."""

    decision: Literal["accept", "decline"] = Field(
        ..., description="Driver decision; accept captures the full hold"
    )

    model_config = {
        "json_schema_extra": {"examples": [{"decision": "accept"}, {"decision": "decline"}]}
    }


class SettlementResponse(BaseModel):
    booking_id: int
    decision: str
    state: str = Field(..., description="Terminal hold state")
    payment_status: str = Field(..., description="Booking payment status")
    authorization_id: Optional[UUID] = None
    capture_id: Optional[str] = None
    noop: bool = Field(default=False, description="True if the hold was already resolved")


class RefundRequest(BaseModel):
    """Request schema for refunding a booking."""

    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )


class RefundResponse(BaseModel):
    booking_id: int
    authorization_id: UUID
    refund_id: str = Field(..., description="Rail refund ID")
    amount_cents: int = Field(..., description="Refunded amount in cents")
    total_refunded_cents: int
    currency: str


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="Processing status")
    event_id: str = Field(..., description="Provider event ID")
    event_type: Optional[str] = None
    outcome: Optional[str] = Field(default=None, description="What the event changed")


class EarningResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    booking_id: int
    ride_id: int
    driver_id: str
    gross_amount_cents: int
    service_fee_amount_cents: int
    net_amount_cents: int
    currency: str
    status: str
    earning_date: date
    payout_request_id: Optional[UUID] = None


class EarningsSummaryResponse(BaseModel):
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


class PayoutRequestBody(BaseModel):
    """Driver payout request."""

    amount_cents: int = Field(..., gt=0, description="Amount to withdraw in cents")
    currency: str = Field(default="CAD", min_length=3, max_length=3)
    payout_method: PayoutMethod
    payout_details: Dict[str, Any] = Field(..., description="Bank or PayPal account details")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount_cents": 2784,
                    "currency": "CAD",
                    "payout_method": "paypal",
                    "payout_details": {"email": "driver@example.com"},
                }
            ]
        }
    }


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    driver_id: str
    amount_cents: int
    currency: str
    payout_method: str
    status: str
    requested_at: datetime


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
