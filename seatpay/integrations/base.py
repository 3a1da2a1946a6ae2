"""
Payment provider contract shared by every rail.

Each rail implements the same hold life cycle (create order, authorize,
capture or void, refund) so the coordinator and the settlement engine never
depend on a rail-specific type. Common resilience lives here too: per-call
timeout, retry with exponential backoff on transient failures, and a
circuit breaker per client.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from seatpay.config import Settings, get_settings
from seatpay.core.errors import ProviderUnavailable, ValidationError
from seatpay.database.models import Rail
from seatpay.domain.money import Money
from seatpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class OrderIntent(str, Enum):
    """What the rail should do once the payer approves."""

    AUTHORIZE = "AUTHORIZE"
    CAPTURE = "CAPTURE"


class ProviderState(str, Enum):
    """Rail-side status normalized across providers."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    UNKNOWN = "unknown"


class ProviderErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


@dataclass(frozen=True)
class ProviderOrder:
    """Order created on the rail, awaiting payer approval."""

    order_id: str
    status: str
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationResult:
    """Funds held on the payer's instrument."""

    authorization_id: str
    expires_at: Optional[datetime]
    status: str = "authorized"


@dataclass(frozen=True)
class ProviderStatus:
    state: ProviderState
    authorization_id: str
    capture_id: Optional[str] = None
    amount_cents: Optional[int] = None
    raw_status: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderEvent:
    """
    Webhook delivery normalized across rails.

    ``reference`` is whichever rail id the event carries (order,
    authorization or capture id); the store maps it back to a row.
    """

    provider: Rail
    event_id: str
    event_type: str
    outcome: Optional[ProviderState]
    reference: Optional[str] = None
    capture_id: Optional[str] = None
    amount_cents: Optional[int] = None


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive transient failures exceed a threshold. Definitive
    rejections (declined card, invalid state) do not count as failures.
    """

    def __init__(
        self,
        rail: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            rail: Rail label used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.rail = rail
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute a coroutine factory with circuit breaker protection.

        Raises:
            ProviderUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", rail=self.rail)
            else:
                raise ProviderUnavailable("Circuit breaker is open", rail=self.rail)

        try:
            result = await func()
        except ProviderUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", rail=self.rail)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and self.state != "open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                rail=self.rail,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.rail, state)


class PaymentProvider(ABC):
    """
    Abstract base class for payment rails.

    Subclasses translate every rail failure into the settlement error
    taxonomy; only ``ProviderUnavailable`` is retried here.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.circuit_breaker = CircuitBreaker(rail=self.rail.value)

    @property
    @abstractmethod
    def rail(self) -> Rail:
        """Rail tag stored on authorization rows."""
        ...

    @abstractmethod
    async def create_order(
        self,
        amount: Money,
        intent: OrderIntent,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderOrder:
        """Create an order the payer must approve out of band."""
        ...

    @abstractmethod
    async def authorize(self, order_id: str) -> AuthorizationResult:
        """
        Place the hold on an approved order.

        Raises:
            NotApproved: The payer has not approved the order
            AlreadyAuthorized: The order was already authorized; carries the
                existing authorization when the rail can recover it
        """
        ...

    @abstractmethod
    async def capture(
        self,
        authorization_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Capture a held authorization, in full unless ``amount`` is given.

        Returns:
            str: Rail capture id
        """
        ...

    @abstractmethod
    async def void(self, authorization_id: str, idempotency_key: Optional[str] = None) -> None:
        """Release a held authorization."""
        ...

    @abstractmethod
    async def refund(
        self,
        capture_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Refund a capture, in full unless ``amount`` is given."""
        ...

    @abstractmethod
    async def fetch_status(self, authorization_id: str) -> ProviderStatus:
        """Current rail-side state of an authorization."""
        ...

    @staticmethod
    def _require_positive(amount: Money) -> None:
        if not amount.is_positive:
            raise ValidationError(f"Amount must be positive, got {amount.cents}")

    async def _execute(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """
        Run one provider operation with timeout, breaker and retry.

        A timed-out call raises ProviderUnavailable; it is never assumed to
        have succeeded.
        """

        async def _attempt() -> T:
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    func(), timeout=self.settings.provider_timeout_seconds
                )
            except asyncio.TimeoutError as exc:
                metrics.record_provider_call(
                    self.rail.value, operation, "timeout", time.perf_counter() - started
                )
                metrics.record_provider_error(self.rail.value, ProviderErrorType.TRANSIENT.value)
                logger.warning("provider_call_timeout", rail=self.rail.value, operation=operation)
                raise ProviderUnavailable(
                    f"{operation} timed out", rail=self.rail.value
                ) from exc
            except ProviderUnavailable:
                metrics.record_provider_call(
                    self.rail.value, operation, "unavailable", time.perf_counter() - started
                )
                raise
            except Exception:
                metrics.record_provider_call(
                    self.rail.value, operation, "error", time.perf_counter() - started
                )
                raise
            metrics.record_provider_call(
                self.rail.value, operation, "success", time.perf_counter() - started
            )
            return result

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ProviderUnavailable),
            stop=stop_after_attempt(self.settings.payment_retry_max_attempts),
            wait=wait_exponential(multiplier=self.settings.payment_retry_base_delay, max=16),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self.circuit_breaker.call(_attempt)
        raise ProviderUnavailable(f"{operation} exhausted retries", rail=self.rail.value)


class ProviderRegistry:
    """Resolves a rail tag to its provider."""

    def __init__(self, providers: Mapping[Rail, PaymentProvider]) -> None:
        self._providers: Dict[Rail, PaymentProvider] = dict(providers)

    def get(self, rail: Rail | str) -> PaymentProvider:
        try:
            key = Rail(rail)
        except ValueError:
            raise ValidationError(f"Unknown payment rail: {rail!r}")
        provider = self._providers.get(key)
        if provider is None:
            raise ValidationError(f"Payment rail not configured: {key.value}")
        return provider

    @property
    def rails(self) -> list[Rail]:
        return list(self._providers)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
