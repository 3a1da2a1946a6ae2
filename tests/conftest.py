"""
Pytest configuration and fixtures.

Every test gets its own SQLite file database and in-memory fake rails, so
no Stripe, PayPal, Postgres or Redis is needed.
"""
import asyncio
import os
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

os.environ.update(
    {
        "STRIPE_SECRET_KEY": "sk_test_fake_key_for_testing",
        "STRIPE_PUBLISHABLE_KEY": "pk_test_fake_key_for_testing",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_fake_secret",
        "PAYPAL_CLIENT_ID": "paypal-client-id",
        "PAYPAL_CLIENT_SECRET": "paypal-client-secret",
        "PAYPAL_WEBHOOK_ID": "WH-TEST-1",
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "REDIS_URL": "",
        "APP_ENV": "test",
        "LOG_LEVEL": "WARNING",
        "PAYMENT_RETRY_BASE_DELAY": "0",
        "PAYMENT_RETRY_MAX_ATTEMPTS": "2",
        "SETTLEMENT_CLAIM_WAIT_SECONDS": "2",
        "SETTLEMENT_CLAIM_POLL_SECONDS": "0.01",
    }
)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from seatpay.config import Settings, get_settings  # noqa: E402
from seatpay.core.earnings import EarningsLedger  # noqa: E402
from seatpay.core.errors import NotApproved  # noqa: E402
from seatpay.core.hold_coordinator import ApprovalResult, HoldCoordinator  # noqa: E402
from seatpay.core.settlement import SettlementEngine  # noqa: E402
from seatpay.database.connection import build_session_factory  # noqa: E402
from seatpay.database.models import Base, Booking, Rail, utcnow  # noqa: E402
from seatpay.domain.money import Money  # noqa: E402
from seatpay.integrations.base import (  # noqa: E402
    AuthorizationResult,
    OrderIntent,
    PaymentProvider,
    ProviderOrder,
    ProviderRegistry,
    ProviderState,
    ProviderStatus,
)

get_settings.cache_clear()


class FakeProvider(PaymentProvider):
    """
    In-memory rail.

    Records every call, and raises queued errors on the next matching call:
    ``provider.fail("capture", ProviderUnavailable("down"))``.
    """

    def __init__(self, rail: Rail = Rail.CARD, settings: Optional[Settings] = None) -> None:
        self._rail = rail
        super().__init__(settings)
        self.calls: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.approved = True
        self.capture_delay = 0.0
        self.status: Optional[ProviderStatus] = None
        self.hold_duration = timedelta(days=7)
        self._orders = 0

    @property
    def rail(self) -> Rail:
        return self._rail

    def fail(self, operation: str, *errors: Exception) -> None:
        self.errors[operation].extend(errors)

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls[operation].append(kwargs)
        if self.errors[operation]:
            raise self.errors[operation].pop(0)

    async def create_order(
        self,
        amount: Money,
        intent: OrderIntent,
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ProviderOrder:
        self._record(
            "create_order",
            amount=amount,
            intent=intent,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        self._orders += 1
        order_id = f"{self._rail.value}_order_{self._orders}"
        if self._rail is Rail.WALLET:
            return ProviderOrder(
                order_id=order_id,
                status="CREATED",
                approval_url=f"https://paypal.test/checkoutnow?token={order_id}",
            )
        return ProviderOrder(
            order_id=order_id, status="requires_payment_method", client_secret=f"{order_id}_secret"
        )

    async def authorize(self, order_id: str) -> AuthorizationResult:
        self._record("authorize", order_id=order_id)
        if not self.approved:
            raise NotApproved(f"Order {order_id} is not approved")
        return AuthorizationResult(
            authorization_id=f"auth_{order_id}",
            expires_at=utcnow() + self.hold_duration,
        )

    async def capture(
        self,
        authorization_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        if self.capture_delay:
            await asyncio.sleep(self.capture_delay)
        self._record(
            "capture",
            authorization_id=authorization_id,
            amount=amount,
            idempotency_key=idempotency_key,
        )
        return f"cap_{authorization_id}"

    async def void(self, authorization_id: str, idempotency_key: Optional[str] = None) -> None:
        self._record("void", authorization_id=authorization_id, idempotency_key=idempotency_key)

    async def refund(
        self,
        capture_id: str,
        amount: Optional[Money] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        self._record(
            "refund", capture_id=capture_id, amount=amount, idempotency_key=idempotency_key
        )
        return f"re_{len(self.calls['refund'])}"

    async def fetch_status(self, authorization_id: str) -> ProviderStatus:
        self._record("fetch_status", authorization_id=authorization_id)
        return self.status or ProviderStatus(
            state=ProviderState.AUTHORIZED,
            authorization_id=authorization_id,
            raw_status="requires_capture",
        )


@pytest.fixture
def settings() -> Settings:
    """Settings built from the test environment."""
    return get_settings()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'seatpay_test.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def card(settings: Settings) -> FakeProvider:
    return FakeProvider(Rail.CARD, settings)


@pytest.fixture
def wallet(settings: Settings) -> FakeProvider:
    return FakeProvider(Rail.WALLET, settings)


@pytest.fixture
def providers(card: FakeProvider, wallet: FakeProvider) -> ProviderRegistry:
    return ProviderRegistry({Rail.CARD: card, Rail.WALLET: wallet})


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession], settings: Settings) -> EarningsLedger:
    return EarningsLedger(session_factory, settings)


@pytest.fixture
def engine(
    providers: ProviderRegistry,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: EarningsLedger,
    settings: Settings,
) -> SettlementEngine:
    return SettlementEngine(
        providers, session_factory=session_factory, earnings=ledger, settings=settings
    )


@pytest.fixture
def coordinator(
    providers: ProviderRegistry,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> HoldCoordinator:
    return HoldCoordinator(providers, session_factory=session_factory, settings=settings)


@pytest.fixture
def make_booking(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Booking]]:
    """Factory for ride bookings (default: one seat at CA$32.75)."""

    async def _make(
        amount_cents: int = 3275,
        currency: str = "CAD",
        driver_id: str = "driver-1",
        passenger_id: str = "passenger-1",
        ride_id: int = 7,
    ) -> Booking:
        booking = Booking(
            ride_id=ride_id,
            passenger_id=passenger_id,
            driver_id=driver_id,
            seats_requested=1,
            amount_cents=amount_cents,
            currency=currency,
            description=f"Ride {ride_id}",
        )
        async with session_factory() as db:
            db.add(booking)
            await db.commit()
        return booking

    return _make


@pytest.fixture
def authorized_hold(
    coordinator: HoldCoordinator,
) -> Callable[..., Awaitable[ApprovalResult]]:
    """Open a hold on a booking and confirm the payer's approval."""

    async def _authorize(
        booking: Booking,
        rail: Rail = Rail.CARD,
        amount_cents: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalResult:
        amount = Money(cents=amount_cents or booking.amount_cents, currency=booking.currency)
        hold = await coordinator.open_hold(booking.id, amount, rail)
        return await coordinator.confirm_approval(
            hold.authorization_id, hold.provider_order_id, now=now
        )

    return _authorize


@pytest.fixture
def fetch(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[Any]]:
    """Load a row by primary key in a fresh session."""

    async def _fetch(model: Any, pk: Any) -> Any:
        async with session_factory() as db:
            return await db.get(model, pk)

    return _fetch


@pytest.fixture
def fetch_all(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[List[Any]]]:
    """All rows of a model matching optional filters."""

    async def _fetch_all(model: Any, *criteria: Any) -> List[Any]:
        stmt = select(model)
        if criteria:
            stmt = stmt.where(*criteria)
        async with session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    return _fetch_all
