"""
Passenger and operations notifications.

Settlement never calls a notifier directly: it writes an outbox event in
its own transaction and the outbox publisher hands that event to the
dispatcher here. A notifier failure leaves the event unpublished so it is
retried on the next batch.
"""
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import structlog

from seatpay.domain.money import Money

logger = structlog.get_logger(__name__)

PAYMENT_CAPTURED = "payment.captured"
PAYMENT_RELEASED = "payment.released"
HOLD_ESCALATED = "hold.escalated"
PAYMENT_REFUNDED = "payment.refunded"


class NotificationGateway(Protocol):
    """Delivery side of the notification subsystem."""

    async def notify_payment_released(self, user_id: str, booking_id: int) -> None:
        ...

    async def notify_payment_captured(self, user_id: str, booking_id: int, amount: Money) -> None:
        ...

    async def notify_operations(self, alert: Dict[str, Any]) -> None:
        ...


class LoggingNotificationGateway:
    """Gateway that only logs; used until a push/email service is wired in."""

    async def notify_payment_released(self, user_id: str, booking_id: int) -> None:
        logger.info("notify_payment_released", user_id=user_id, booking_id=booking_id)

    async def notify_payment_captured(self, user_id: str, booking_id: int, amount: Money) -> None:
        logger.info(
            "notify_payment_captured",
            user_id=user_id,
            booking_id=booking_id,
            amount=str(amount),
        )

    async def notify_operations(self, alert: Dict[str, Any]) -> None:
        logger.critical("operations_alert", **alert)


class NotificationDispatcher:
    """Routes published outbox events to the notification gateway."""

    def __init__(self, gateway: Optional[NotificationGateway] = None) -> None:
        self.gateway = gateway or LoggingNotificationGateway()
        self._routes: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            PAYMENT_CAPTURED: self._payment_captured,
            PAYMENT_RELEASED: self._payment_released,
            HOLD_ESCALATED: self._hold_escalated,
        }

    async def __call__(self, event_data: Dict[str, Any]) -> None:
        event_type = event_data.get("event_type", "")
        route = self._routes.get(event_type)
        if route is None:
            logger.debug("notification_not_required", event_type=event_type)
            return
        await route(event_data["payload"])

    async def _payment_captured(self, payload: Dict[str, Any]) -> None:
        await self.gateway.notify_payment_captured(
            payload["passenger_id"],
            payload["booking_id"],
            Money(cents=payload["amount_cents"], currency=payload["currency"]),
        )

    async def _payment_released(self, payload: Dict[str, Any]) -> None:
        await self.gateway.notify_payment_released(payload["passenger_id"], payload["booking_id"])

    async def _hold_escalated(self, payload: Dict[str, Any]) -> None:
        await self.gateway.notify_operations(payload)
