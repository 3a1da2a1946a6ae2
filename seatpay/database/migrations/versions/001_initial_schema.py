"""Initial settlement schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create ride_bookings table (payment-facing columns of the booking subsystem)
    op.create_table(
        "ride_bookings",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=False),
        sa.Column("passenger_id", sa.String(length=64), nullable=False),
        sa.Column("driver_id", sa.String(length=64), nullable=False),
        sa.Column("seats_requested", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_status", sa.String(length=20), nullable=False),
        sa.Column("response_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_decision", sa.String(length=20), nullable=False),
        sa.Column("payment_authorization_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="booking_positive_amount"),
        sa.CheckConstraint("seats_requested > 0", name="booking_positive_seats"),
        sa.CheckConstraint(
            "payment_status IN ('none', 'pending', 'authorized', 'captured', 'voided', 'expired')",
            name="valid_payment_status",
        ),
        sa.CheckConstraint(
            "driver_decision IN ('none', 'accepted', 'declined')",
            name="valid_driver_decision",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_ride_bookings_ride_id"), "ride_bookings", ["ride_id"])
    op.create_index(op.f("ix_ride_bookings_passenger_id"), "ride_bookings", ["passenger_id"])
    op.create_index(op.f("ix_ride_bookings_driver_id"), "ride_bookings", ["driver_id"])
    op.create_index(
        "idx_bookings_deadline_decision",
        "ride_bookings",
        ["response_deadline", "driver_decision"],
    )

    # Create payment_authorizations table
    op.create_table(
        "payment_authorizations",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("provider_order_id", sa.String(length=255), nullable=False),
        sa.Column("provider_authorization_id", sa.String(length=255), nullable=True),
        sa.Column("provider_capture_id", sa.String(length=255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(length=64), nullable=True),
        sa.Column("claimed_decision", sa.String(length=20), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("void_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("captured_amount_cents", sa.Integer(), nullable=True),
        sa.Column("refunded_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="authorization_positive_amount"),
        sa.CheckConstraint(
            "refunded_amount_cents >= 0", name="authorization_refund_non_negative"
        ),
        sa.CheckConstraint(
            "state IN ('created', 'authorized', 'captured', 'voided', 'failed')",
            name="valid_authorization_state",
        ),
        sa.CheckConstraint("provider IN ('card', 'wallet')", name="valid_provider"),
        sa.CheckConstraint("length(currency) = 3", name="authorization_valid_currency"),
        sa.ForeignKeyConstraint(["booking_id"], ["ride_bookings.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_payment_authorizations_active_booking",
        "payment_authorizations",
        ["booking_id"],
        unique=True,
        postgresql_where=sa.text("state IN ('created', 'authorized')"),
    )
    op.create_index(
        "idx_payment_authorizations_state_created",
        "payment_authorizations",
        ["state", "created_at"],
    )
    op.create_index(
        op.f("ix_payment_authorizations_booking_id"), "payment_authorizations", ["booking_id"]
    )
    op.create_index(
        op.f("ix_payment_authorizations_provider_order_id"),
        "payment_authorizations",
        ["provider_order_id"],
    )
    op.create_index(
        op.f("ix_payment_authorizations_provider_authorization_id"),
        "payment_authorizations",
        ["provider_authorization_id"],
    )
    op.create_index(
        op.f("ix_payment_authorizations_provider_capture_id"),
        "payment_authorizations",
        ["provider_capture_id"],
    )
    op.create_index(
        op.f("ix_payment_authorizations_state"), "payment_authorizations", ["state"]
    )
    op.create_index(
        op.f("ix_payment_authorizations_created_at"), "payment_authorizations", ["created_at"]
    )

    # Create payment_events table
    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("authorization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_payment_events_authorization_id"), "payment_events", ["authorization_id"]
    )
    op.create_index(op.f("ix_payment_events_event_type"), "payment_events", ["event_type"])
    op.create_index(
        op.f("ix_payment_events_correlation_id"), "payment_events", ["correlation_id"]
    )
    op.create_index(op.f("ix_payment_events_created_at"), "payment_events", ["created_at"])

    # Create payout_requests table (before earnings, which reference it)
    op.create_table(
        "payout_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("driver_id", sa.String(length=64), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payout_method", sa.String(length=20), nullable=False),
        sa.Column("payout_details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount_cents > 0", name="payout_positive_amount"),
        sa.CheckConstraint(
            "payout_method IN ('bank_transfer', 'paypal')", name="valid_payout_method"
        ),
        sa.CheckConstraint(
            "status IN ('requested', 'processing', 'paid', 'rejected')",
            name="valid_payout_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_payout_requests_driver_id"), "payout_requests", ["driver_id"])

    # Create earnings table
    op.create_table(
        "earnings",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("booking_id", sa.Integer(), nullable=False),
        sa.Column("authorization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("driver_id", sa.String(length=64), nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=False),
        sa.Column("gross_amount_cents", sa.Integer(), nullable=False),
        sa.Column("service_fee_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("service_fee_amount_cents", sa.Integer(), nullable=False),
        sa.Column("net_amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("earning_date", sa.Date(), nullable=False),
        sa.Column("payout_request_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("gross_amount_cents > 0", name="earning_positive_gross"),
        sa.CheckConstraint(
            "net_amount_cents + service_fee_amount_cents = gross_amount_cents",
            name="earning_split_reconciles",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'available', 'requested', 'processing', 'paid')",
            name="valid_earning_status",
        ),
        sa.ForeignKeyConstraint(["booking_id"], ["ride_bookings.id"]),
        sa.ForeignKeyConstraint(["payout_request_id"], ["payout_requests.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("booking_id"),
    )
    op.create_index(op.f("ix_earnings_driver_id"), "earnings", ["driver_id"])
    op.create_index(op.f("ix_earnings_status"), "earnings", ["status"])
    op.create_index("idx_earnings_driver_date", "earnings", ["driver_id", "earning_date"])
    op.create_index("idx_earnings_driver_status", "earnings", ["driver_id", "status"])

    # Create outbox_events table
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("parked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_outbox_aggregate",
        "outbox_events",
        ["aggregate_id", "aggregate_type"],
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(op.f("ix_outbox_events_published"), "outbox_events", ["published"])

    # Create provider_webhook_events table
    op.create_table(
        "provider_webhook_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("provider", sa.String(length=20), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )
    op.create_index(
        "idx_webhook_unprocessed",
        "provider_webhook_events",
        ["processed_at", "received_at"],
    )

    # Create worker_heartbeats table
    op.create_table(
        "worker_heartbeats",
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("last_beat_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("worker_heartbeats")
    op.drop_index("idx_webhook_unprocessed", table_name="provider_webhook_events")
    op.drop_table("provider_webhook_events")
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_index(
        "idx_outbox_unpublished",
        table_name="outbox_events",
        postgresql_where=sa.text("NOT published"),
    )
    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("idx_earnings_driver_status", table_name="earnings")
    op.drop_index("idx_earnings_driver_date", table_name="earnings")
    op.drop_index(op.f("ix_earnings_status"), table_name="earnings")
    op.drop_index(op.f("ix_earnings_driver_id"), table_name="earnings")
    op.drop_table("earnings")
    op.drop_index(op.f("ix_payout_requests_driver_id"), table_name="payout_requests")
    op.drop_table("payout_requests")
    op.drop_index(op.f("ix_payment_events_created_at"), table_name="payment_events")
    op.drop_index(op.f("ix_payment_events_correlation_id"), table_name="payment_events")
    op.drop_index(op.f("ix_payment_events_event_type"), table_name="payment_events")
    op.drop_index(op.f("ix_payment_events_authorization_id"), table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index(
        op.f("ix_payment_authorizations_created_at"), table_name="payment_authorizations"
    )
    op.drop_index(op.f("ix_payment_authorizations_state"), table_name="payment_authorizations")
    op.drop_index(
        op.f("ix_payment_authorizations_provider_capture_id"),
        table_name="payment_authorizations",
    )
    op.drop_index(
        op.f("ix_payment_authorizations_provider_authorization_id"),
        table_name="payment_authorizations",
    )
    op.drop_index(
        op.f("ix_payment_authorizations_provider_order_id"),
        table_name="payment_authorizations",
    )
    op.drop_index(
        op.f("ix_payment_authorizations_booking_id"), table_name="payment_authorizations"
    )
    op.drop_index(
        "idx_payment_authorizations_state_created", table_name="payment_authorizations"
    )
    op.drop_index(
        "uq_payment_authorizations_active_booking", table_name="payment_authorizations"
    )
    op.drop_table("payment_authorizations")
    op.drop_index("idx_bookings_deadline_decision", table_name="ride_bookings")
    op.drop_index(op.f("ix_ride_bookings_driver_id"), table_name="ride_bookings")
    op.drop_index(op.f("ix_ride_bookings_passenger_id"), table_name="ride_bookings")
    op.drop_index(op.f("ix_ride_bookings_ride_id"), table_name="ride_bookings")
    op.drop_table("ride_bookings")
