"""
Service wiring for the API.

Each getter builds its service once per process. Routes receive them via
``Depends`` so tests can swap any of them with ``app.dependency_overrides``.
"""
from functools import lru_cache

from seatpay.core.earnings import EarningsLedger
from seatpay.core.hold_coordinator import HoldCoordinator
from seatpay.core.settlement import SettlementEngine
from seatpay.integrations import ProviderRegistry, build_provider_registry
from seatpay.integrations.webhook_handler import WebhookHandler
from seatpay.monitoring.health import HealthCheck


@lru_cache
def get_providers() -> ProviderRegistry:
    return build_provider_registry()


@lru_cache
def get_hold_coordinator() -> HoldCoordinator:
    return HoldCoordinator(get_providers())


@lru_cache
def get_earnings_ledger() -> EarningsLedger:
    return EarningsLedger()


@lru_cache
def get_settlement_engine() -> SettlementEngine:
    return SettlementEngine(get_providers(), earnings=get_earnings_ledger())


@lru_cache
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler(get_settlement_engine(), get_hold_coordinator())


@lru_cache
def get_health_check() -> HealthCheck:
    return HealthCheck()


async def shutdown_services() -> None:
    """Close clients opened by the getters above."""
    if get_webhook_handler.cache_info().currsize:
        await get_webhook_handler().close()
    if get_providers.cache_info().currsize:
        await get_providers().aclose()
    for getter in (
        get_providers,
        get_hold_coordinator,
        get_earnings_ledger,
        get_settlement_engine,
        get_webhook_handler,
        get_health_check,
    ):
        getter.cache_clear()
