"""Settlement core: record store, hold coordinator, settlement engine and earnings."""
from .errors import (
    AlreadyAuthorized,
    AmountExceedsAuthorization,
    DuplicateHold,
    InsufficientAvailableEarnings,
    InvalidState,
    NoActiveHold,
    NotApproved,
    ProviderRejected,
    ProviderUnavailable,
    ResolutionInProgress,
    ResponseWindowClosed,
    SettlementError,
    ValidationError,
)

__all__ = [
    "AlreadyAuthorized",
    "AmountExceedsAuthorization",
    "DuplicateHold",
    "InsufficientAvailableEarnings",
    "InvalidState",
    "NoActiveHold",
    "NotApproved",
    "ProviderRejected",
    "ProviderUnavailable",
    "ResolutionInProgress",
    "ResponseWindowClosed",
    "SettlementError",
    "ValidationError",
]
