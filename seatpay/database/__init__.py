"""Database package for the settlement core."""
from .connection import build_session_factory, close_db, get_session_factory, init_db
from .models import (
    AuthorizationState,
    Base,
    Booking,
    DriverDecision,
    Earning,
    EarningStatus,
    OutboxEvent,
    PaymentAuthorization,
    PaymentEvent,
    PaymentStatus,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    ProviderWebhookEvent,
    Rail,
    WorkerHeartbeat,
)

__all__ = [
    "AuthorizationState",
    "Base",
    "Booking",
    "DriverDecision",
    "Earning",
    "EarningStatus",
    "OutboxEvent",
    "PaymentAuthorization",
    "PaymentEvent",
    "PaymentStatus",
    "PayoutMethod",
    "PayoutRequest",
    "PayoutStatus",
    "ProviderWebhookEvent",
    "Rail",
    "WorkerHeartbeat",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]
