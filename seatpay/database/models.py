"""SQLAlchemy database models for the payment settlement core."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as an aware UTC datetime.

    SQLite has no timezone support, so values are stored there as naive UTC
    and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Rail(str, Enum):
    """Payment rail a hold was opened on."""

    CARD = "card"
    WALLET = "wallet"


class AuthorizationState(str, Enum):
    """Life cycle of a single hold attempt."""

    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self not in (AuthorizationState.CREATED, AuthorizationState.AUTHORIZED)


ACTIVE_STATES = (AuthorizationState.CREATED.value, AuthorizationState.AUTHORIZED.value)


class PaymentStatus(str, Enum):
    """Booking-level payment status shown to passengers."""

    NONE = "none"
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"
    EXPIRED = "expired"


class DriverDecision(str, Enum):
    NONE = "none"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class EarningStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    REQUESTED = "requested"
    PROCESSING = "processing"
    PAID = "paid"


class PayoutMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    PAYPAL = "paypal"


class PayoutStatus(str, Enum):
    REQUESTED = "requested"
    PROCESSING = "processing"
    PAID = "paid"
    REJECTED = "rejected"


def _check_in(column: str, enum_cls: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Booking(Base):
    """
    Seat booking on a ride.

    Owned by the ride-booking subsystem; the payment core only writes the
    payment status, response deadline, driver decision and the
    back-reference to the current authorization.
    """

    __tablename__ = "ride_bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    passenger_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    driver_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seats_requested: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.NONE.value
    )
    response_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    driver_decision: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DriverDecision.NONE.value
    )
    payment_authorization_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), nullable=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="booking_positive_amount"),
        CheckConstraint("seats_requested > 0", name="booking_positive_seats"),
        CheckConstraint(_check_in("payment_status", PaymentStatus), name="valid_payment_status"),
        CheckConstraint(_check_in("driver_decision", DriverDecision), name="valid_driver_decision"),
        Index("idx_bookings_deadline_decision", "response_deadline", "driver_decision"),
    )

    def __repr__(self) -> str:
        """String representation of Booking."""
        return (
            f"<Booking(id={self.id}, ride_id={self.ride_id}, "
            f"payment_status={self.payment_status}, decision={self.driver_decision})>"
        )


class PaymentAuthorization(Base):
    """
    One hold attempt against a booking.

    At most one row per booking may be in a non-terminal state
    (created/authorized); the partial unique index enforces it. Rows are
    never deleted, failed and voided attempts stay for audit.
    """

    __tablename__ = "payment_authorizations"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ride_bookings.id"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    provider_authorization_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )
    provider_capture_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AuthorizationState.CREATED.value, index=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Settlement claim: a resolver owns the row while its provider call is in flight
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    void_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    captured_amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    refunded_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="authorization_positive_amount"),
        CheckConstraint("refunded_amount_cents >= 0", name="authorization_refund_non_negative"),
        CheckConstraint(_check_in("state", AuthorizationState), name="valid_authorization_state"),
        CheckConstraint(_check_in("provider", Rail), name="valid_provider"),
        CheckConstraint("length(currency) = 3", name="authorization_valid_currency"),
        Index(
            "uq_payment_authorizations_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("state IN ('created', 'authorized')"),
            sqlite_where=text("state IN ('created', 'authorized')"),
        ),
        Index("idx_payment_authorizations_state_created", "state", "created_at"),
    )

    @property
    def state_enum(self) -> AuthorizationState:
        return AuthorizationState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state_enum.is_terminal

    def __repr__(self) -> str:
        """String representation of PaymentAuthorization."""
        return (
            f"<PaymentAuthorization(id={self.id}, booking_id={self.booking_id}, "
            f"provider={self.provider}, amount={self.amount_cents}, state={self.state})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every transition of an authorization. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    authorization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, authorization_id={self.authorization_id}, "
            f"type={self.event_type})>"
        )


class Earning(Base):
    """
    Driver earning produced by a captured authorization.

    Exactly one row per booking; the split always reconciles to the gross
    amount in integer cents.
    """

    __tablename__ = "earnings"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("ride_bookings.id"), nullable=False, unique=True
    )
    authorization_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    driver_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ride_id: Mapped[int] = mapped_column(Integer, nullable=False)
    gross_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    service_fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    service_fee_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    net_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EarningStatus.PENDING.value, index=True
    )
    earning_date: Mapped[date] = mapped_column(Date, nullable=False)
    payout_request_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("payout_requests.id"), nullable=True
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("gross_amount_cents > 0", name="earning_positive_gross"),
        CheckConstraint(
            "net_amount_cents + service_fee_amount_cents = gross_amount_cents",
            name="earning_split_reconciles",
        ),
        CheckConstraint(_check_in("status", EarningStatus), name="valid_earning_status"),
        Index("idx_earnings_driver_date", "driver_id", "earning_date"),
        Index("idx_earnings_driver_status", "driver_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Earning."""
        return (
            f"<Earning(id={self.id}, booking_id={self.booking_id}, "
            f"net={self.net_amount_cents}, status={self.status})>"
        )


class PayoutRequest(Base):
    """Driver withdrawal of available earnings."""

    __tablename__ = "payout_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    driver_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payout_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payout_details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PayoutStatus.REQUESTED.value
    )
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="payout_positive_amount"),
        CheckConstraint(_check_in("payout_method", PayoutMethod), name="valid_payout_method"),
        CheckConstraint(_check_in("status", PayoutStatus), name="valid_payout_status"),
    )

    def __repr__(self) -> str:
        """String representation of PayoutRequest."""
        return (
            f"<PayoutRequest(id={self.id}, driver_id={self.driver_id}, "
            f"amount={self.amount_cents}, status={self.status})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as the settlement change,
    then delivered asynchronously by the outbox publisher worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set once delivery has failed max_attempts times; the publisher skips it
    parked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class ProviderWebhookEvent(Base):
    """
    Durable record of every webhook delivery from a rail.

    The (provider, event_id) pair is unique, so a redelivered event is
    recognised no matter which API instance receives it.
    """

    __tablename__ = "provider_webhook_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
        Index("idx_webhook_unprocessed", "processed_at", "received_at"),
    )

    def __repr__(self) -> str:
        """String representation of ProviderWebhookEvent."""
        return (
            f"<ProviderWebhookEvent(id={self.id}, provider={self.provider}, "
            f"event_id={self.event_id}, processed={self.processed_at is not None})>"
        )


class WorkerHeartbeat(Base):
    """Last tick of each long-running worker, read by the health check."""

    __tablename__ = "worker_heartbeats"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    last_beat_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
