"""FastAPI application and routes."""
from .main import app
from .schemas import (
    HoldResponse,
    OpenHoldRequest,
    RefundRequest,
    RefundResponse,
    ResolveRequest,
    SettlementResponse,
)

__all__ = [
    "app",
    "HoldResponse",
    "OpenHoldRequest",
    "RefundRequest",
    "RefundResponse",
    "ResolveRequest",
    "SettlementResponse",
]
