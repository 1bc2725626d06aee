"""checkout engine

Revision ID: 0001_checkout_engine
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa

revision = "0001_checkout_engine"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "carts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="open"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_carts_user_id", "carts", ["user_id"])
    op.create_index("ix_carts_status", "carts", ["status"])

    op.create_table(
        "cart_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("cart_id", sa.String(length=36), sa.ForeignKey("carts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("item_type", sa.String(length=30), nullable=False),
        sa.Column("provider_id", sa.String(length=60), nullable=False),
        sa.Column("offer_id", sa.String(length=120), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("occupants", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("requires_document", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("offer_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("schedule", sa.JSON(), nullable=False),
        sa.Column("cancellation_policy", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
        *_timestamps(),
    )
    op.create_index("ix_cart_items_cart_id", "cart_items", ["cart_id"])
    op.create_index("ix_cart_items_provider_id", "cart_items", ["provider_id"])

    op.create_table(
        "checkout_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("cart_id", sa.String(length=36), sa.ForeignKey("carts.id"), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="initialized"),
        sa.Column("price_snapshot", sa.JSON(), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("price_change_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_price_deltas", sa.JSON(), nullable=False),
        sa.Column("travelers", sa.JSON(), nullable=False),
        sa.Column("contact", sa.JSON(), nullable=False),
        sa.Column("payment_transaction_id", sa.String(length=36), nullable=True),
        sa.Column("error_code", sa.String(length=60), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_checkout_sessions_cart_id", "checkout_sessions", ["cart_id"])
    op.create_index("ix_checkout_sessions_user_id", "checkout_sessions", ["user_id"])
    op.create_index("ix_checkout_sessions_status", "checkout_sessions", ["status"])
    op.create_index("ix_checkout_sessions_expires_at", "checkout_sessions", ["expires_at"])

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("checkout_session_id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False, server_default="cybersource"),
        sa.Column("gateway_intent_id", sa.String(length=120), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="created"),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("refunded_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(length=60), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_transactions_checkout_session_id", "payment_transactions", ["checkout_session_id"])
    op.create_index("ix_payment_transactions_gateway_intent_id", "payment_transactions", ["gateway_intent_id"])
    op.create_index("ix_payment_transactions_status", "payment_transactions", ["status"])
    op.create_index("ix_payment_transactions_idempotency_key", "payment_transactions", ["idempotency_key"], unique=True)

    op.create_table(
        "payment_refunds",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("payment_transaction_id", sa.String(length=36), nullable=False),
        sa.Column("booking_item_id", sa.String(length=36), nullable=True),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("gateway_refund_id", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_refunds_payment_transaction_id", "payment_refunds", ["payment_transaction_id"])
    op.create_index("ix_payment_refunds_booking_item_id", "payment_refunds", ["booking_item_id"])
    op.create_index("ix_payment_refunds_idempotency_key", "payment_refunds", ["idempotency_key"], unique=True)

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("booking_ref", sa.String(length=20), nullable=False),
        sa.Column("checkout_session_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("payment_transaction_id", sa.String(length=36), nullable=False),
        sa.Column("total_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("travelers", sa.JSON(), nullable=False),
        sa.Column("contact", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_bookings_booking_ref", "bookings", ["booking_ref"], unique=True)
    op.create_index("ix_bookings_checkout_session_id", "bookings", ["checkout_session_id"], unique=True)
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_payment_transaction_id", "bookings", ["payment_transaction_id"])

    op.create_table(
        "booking_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("cart_item_id", sa.String(length=36), nullable=True),
        sa.Column("item_type", sa.String(length=30), nullable=False),
        sa.Column("provider_id", sa.String(length=60), nullable=False),
        sa.Column("offer_id", sa.String(length=120), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("provider_confirmation_ref", sa.String(length=120), nullable=True),
        sa.Column("provider_idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("traveler_assignments", sa.JSON(), nullable=False),
        sa.Column("schedule_snapshot", sa.JSON(), nullable=False),
        sa.Column("cancellation_policy", sa.JSON(), nullable=False),
        sa.Column("reconciliation_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refunded_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_booking_items_booking_id", "booking_items", ["booking_id"])
    op.create_index("ix_booking_items_provider_id", "booking_items", ["provider_id"])
    op.create_index("ix_booking_items_status", "booking_items", ["status"])
    op.create_index("ix_booking_items_provider_idempotency_key", "booking_items", ["provider_idempotency_key"])

    op.create_table(
        "schedule_changes",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("booking_id", sa.String(length=36), nullable=False),
        sa.Column("booking_item_id", sa.String(length=36), sa.ForeignKey("booking_items.id", ondelete="CASCADE"), nullable=False),
        sa.Column("previous", sa.JSON(), nullable=False),
        sa.Column("current", sa.JSON(), nullable=False),
        sa.Column("changed_fields", sa.JSON(), nullable=False),
        sa.Column("significance", sa.String(length=30), nullable=False, server_default="minor"),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_schedule_changes_booking_id", "schedule_changes", ["booking_id"])
    op.create_index("ix_schedule_changes_booking_item_id", "schedule_changes", ["booking_item_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("external_event_id", sa.String(length=200), nullable=False),
        sa.Column("source", sa.String(length=40), nullable=False, server_default="payment_gateway"),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_webhook_events_external_event_id", "webhook_events", ["external_event_id"], unique=True)
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_processed", "webhook_events", ["processed"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("actor", sa.String(length=60), nullable=False),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("entity_type", sa.String(length=40), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_actor", "audit_logs", ["actor"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"])
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])

    op.create_table(
        "notification_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("template_id", sa.String(length=80), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_notification_logs_user_id", "notification_logs", ["user_id"])
    op.create_index("ix_notification_logs_template_id", "notification_logs", ["template_id"])
    op.create_index("ix_notification_logs_status", "notification_logs", ["status"])


def downgrade() -> None:
    for table in (
        "notification_logs",
        "audit_logs",
        "webhook_events",
        "schedule_changes",
        "booking_items",
        "bookings",
        "payment_refunds",
        "payment_transactions",
        "checkout_sessions",
        "cart_items",
        "carts",
    ):
        op.drop_table(table)
