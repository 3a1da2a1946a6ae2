"""
API routes for holds, settlement, earnings and provider webhooks.

Settlement errors propagate to the exception handler in ``main``, which
maps them to HTTP status codes with passenger-safe messages.
"""
from datetime import date
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from seatpay.core.earnings import EarningsLedger
from seatpay.core.hold_coordinator import HoldCoordinator
from seatpay.core.settlement import SettlementEngine
from seatpay.database.models import Earning, PayoutRequest
from seatpay.domain.money import Money
from seatpay.integrations.webhook_handler import WebhookHandler
from seatpay.monitoring.health import HealthCheck

from .schemas import (
    ApprovalResponse,
    ConfirmApprovalRequest,
    EarningResponse,
    EarningsSummaryResponse,
    HealthCheckResponse,
    HoldResponse,
    HoldStatusResponse,
    OpenHoldRequest,
    PayoutRequestBody,
    PayoutResponse,
    ProviderStatusResponse,
    RefundRequest,
    RefundResponse,
    ResolveRequest,
    SettlementResponse,
    WebhookResponse,
)
from .services import (
    get_earnings_ledger,
    get_health_check,
    get_hold_coordinator,
    get_settlement_engine,
    get_webhook_handler,
)

logger = structlog.get_logger(__name__)

# Create routers
hold_router = APIRouter(prefix="/holds", tags=["holds"])
booking_router = APIRouter(prefix="/bookings", tags=["settlement"])
earnings_router = APIRouter(tags=["earnings"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


@hold_router.post(
    "",
    response_model=HoldResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a hold",
    description="Create an order on the chosen rail for the passenger to approve",
)
async def open_hold(
    request: OpenHoldRequest,
    coordinator: HoldCoordinator = Depends(get_hold_coordinator),
) -> Any:
    logger.info(
        "api_open_hold_request",
        booking_id=request.booking_id,
        amount_cents=request.amount_cents,
        currency=request.currency,
        rail=request.rail.value,
    )
    amount = Money(cents=request.amount_cents, currency=request.currency)
    return await coordinator.open_hold(request.booking_id, amount, request.rail)


@hold_router.post(
    "/{authorization_id}/confirm",
    response_model=ApprovalResponse,
    summary="Confirm payer approval",
    description="Authorize the hold once the payer approved it and start the driver's window",
)
async def confirm_approval(
    authorization_id: UUID,
    request: ConfirmApprovalRequest,
    coordinator: HoldCoordinator = Depends(get_hold_coordinator),
) -> Any:
    logger.info("api_confirm_approval_request", authorization_id=str(authorization_id))
    return await coordinator.confirm_approval(authorization_id, request.provider_order_id)


@hold_router.get(
    "/{authorization_id}",
    response_model=HoldStatusResponse,
    summary="Get hold",
)
async def get_hold(
    authorization_id: UUID,
    coordinator: HoldCoordinator = Depends(get_hold_coordinator),
) -> Any:
    return await coordinator.get_hold(authorization_id)


@hold_router.get(
    "/{authorization_id}/provider-status",
    response_model=ProviderStatusResponse,
    summary="Get rail-side hold status",
)
async def get_provider_status(
    authorization_id: UUID,
    coordinator: HoldCoordinator = Depends(get_hold_coordinator),
) -> Dict[str, Any]:
    result = await coordinator.provider_status(authorization_id)
    return {
        "state": result.state.value,
        "authorization_id": result.authorization_id,
        "capture_id": result.capture_id,
        "amount_cents": result.amount_cents,
        "raw_status": result.raw_status,
    }


@booking_router.post(
    "/{booking_id}/resolve",
    response_model=SettlementResponse,
    summary="Resolve a booking's hold",
    description="Capture on accept, release on decline",
)
async def resolve_booking(
    booking_id: int,
    request: ResolveRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> Dict[str, Any]:
    logger.info("api_resolve_request", booking_id=booking_id, decision=request.decision)
    result = await engine.resolve(booking_id, request.decision)
    return {
        "booking_id": result.booking_id,
        "decision": result.decision.value,
        "state": result.state,
        "payment_status": result.payment_status,
        "authorization_id": result.authorization_id,
        "capture_id": result.capture_id,
        "noop": result.noop,
    }


@booking_router.post(
    "/{booking_id}/refund",
    response_model=RefundResponse,
    summary="Refund a captured booking",
    description="Full refund unless an amount is given",
)
async def refund_booking(
    booking_id: int,
    request: RefundRequest,
    engine: SettlementEngine = Depends(get_settlement_engine),
) -> Any:
    logger.info("api_refund_request", booking_id=booking_id, amount_cents=request.amount_cents)
    amount: Optional[Money] = None
    if request.amount_cents is not None:
        async with engine.session_factory() as db:
            booking = await engine.bookings.get_booking(db, booking_id)
        amount = Money(cents=request.amount_cents, currency=booking.currency)
    return await engine.refund(booking_id, amount)


@earnings_router.post(
    "/earnings/{booking_id}/available",
    response_model=EarningResponse,
    summary="Release an earning for payout",
    description="Called when the ride completes",
)
async def mark_earning_available(
    booking_id: int,
    ledger: EarningsLedger = Depends(get_earnings_ledger),
) -> Earning:
    return await ledger.mark_available(booking_id)


@earnings_router.get(
    "/drivers/{driver_id}/earnings",
    response_model=List[EarningResponse],
    summary="List a driver's earnings",
)
async def list_earnings(
    driver_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = 100,
    ledger: EarningsLedger = Depends(get_earnings_ledger),
) -> List[Earning]:
    if limit < 1 or limit > 500:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="limit must be between 1 and 500"
        )
    return await ledger.list_earnings(driver_id, start=start, end=end, limit=limit)


@earnings_router.get(
    "/drivers/{driver_id}/earnings/summary",
    response_model=EarningsSummaryResponse,
    summary="Driver earnings dashboard",
)
async def earnings_summary(
    driver_id: str,
    ledger: EarningsLedger = Depends(get_earnings_ledger),
) -> Any:
    return await ledger.driver_summary(driver_id)


@earnings_router.post(
    "/drivers/{driver_id}/payouts",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
    description="Withdraw available earnings, oldest first",
)
async def request_payout(
    driver_id: str,
    request: PayoutRequestBody,
    ledger: EarningsLedger = Depends(get_earnings_ledger),
) -> PayoutRequest:
    logger.info(
        "api_payout_request",
        driver_id=driver_id,
        amount_cents=request.amount_cents,
        method=request.payout_method.value,
    )
    return await ledger.request_payout(
        driver_id,
        Money(cents=request.amount_cents, currency=request.currency),
        request.payout_method,
        request.payout_details,
    )


@earnings_router.get(
    "/drivers/{driver_id}/payouts",
    response_model=List[PayoutResponse],
    summary="List a driver's payout requests",
)
async def list_payouts(
    driver_id: str,
    ledger: EarningsLedger = Depends(get_earnings_ledger),
) -> List[PayoutRequest]:
    return await ledger.list_payout_requests(driver_id)


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Record and apply Stripe events; acknowledged once recorded",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(..., alias="Stripe-Signature"),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    body = await request.body()
    result = await handler.handle_stripe(body, stripe_signature)
    logger.info("api_webhook_received", provider="stripe", **result)
    return result


@webhook_router.post(
    "/paypal",
    response_model=WebhookResponse,
    summary="PayPal webhook endpoint",
    description="Record and apply PayPal events; acknowledged once recorded",
)
async def paypal_webhook(
    request: Request,
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    body = await request.body()
    result = await handler.handle_paypal(dict(request.headers), body)
    logger.info("api_webhook_received", provider="paypal", **result)
    return result


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        result = await health_check.check_all()
        return result
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness",
    description="Kubernetes liveness endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness",
    description="Kubernetes readiness endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness endpoint."""
    try:
        result = await health_check.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
