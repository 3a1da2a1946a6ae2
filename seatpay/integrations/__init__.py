"""Payment rail integrations."""
from typing import Optional

from seatpay.config import Settings, get_settings
from seatpay.database.models import Rail

from .base import (
    AuthorizationResult,
    CircuitBreaker,
    OrderIntent,
    PaymentProvider,
    ProviderEvent,
    ProviderOrder,
    ProviderRegistry,
    ProviderState,
    ProviderStatus,
)
from .paypal_client import PayPalClient
from .stripe_client import StripeClient


def build_provider_registry(settings: Optional[Settings] = None) -> ProviderRegistry:
    """Card rail always; wallet rail when PayPal credentials are configured."""
    settings = settings or get_settings()
    providers = {Rail.CARD: StripeClient(settings)}
    if settings.paypal_client_id and settings.paypal_client_secret:
        providers[Rail.WALLET] = PayPalClient(settings)
    return ProviderRegistry(providers)


__all__ = [
    "AuthorizationResult",
    "CircuitBreaker",
    "OrderIntent",
    "PaymentProvider",
    "PayPalClient",
    "ProviderEvent",
    "ProviderOrder",
    "ProviderRegistry",
    "ProviderState",
    "ProviderStatus",
    "StripeClient",
    "build_provider_registry",
]
