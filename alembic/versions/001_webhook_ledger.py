"""Webhook ledger - event ledger, audit log and the resources webhooks update.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Event ledger
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("payload_hash", sa.String(64)),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("processing_duration_ms", sa.Integer),
        sa.Column("error_message", sa.Text),
        sa.Column("error_category", sa.String(30)),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("http_headers", postgresql.JSONB),
        sa.Column("ip_address", sa.String(64)),
        sa.Column("user_agent", sa.Text),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
    )
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])
    op.create_index("ix_webhook_events_created_at", "webhook_events", ["created_at"])
    op.create_index("ix_webhook_events_provider_created_at", "webhook_events", ["provider", "created_at"])
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])

    # Stage-by-stage audit trail
    op.create_table(
        "webhook_audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stage", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100)),
        sa.Column("record_id", postgresql.UUID(as_uuid=True)),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("error_category", sa.String(30)),
        sa.Column("error_message", sa.Text),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_audit_log_event", "webhook_audit_log", ["provider", "event_id"])
    op.create_index("ix_webhook_audit_log_stage", "webhook_audit_log", ["stage"])
    op.create_index("ix_webhook_audit_log_created_at", "webhook_audit_log", ["created_at"])

    # Payments (Stripe PaymentIntents)
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_charge_id", sa.String(255)),
        sa.Column("company_id", sa.String(64)),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("amount_refunded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.Text),
        sa.Column("last_error_code", sa.String(100)),
        sa.Column("captured_at", sa.DateTime(timezone=True)),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("metadata", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_stripe_charge_id", "payments", ["stripe_charge_id"])
    op.create_index("ix_payments_company_id", "payments", ["company_id"])

    # Subscriptions (Stripe Subscriptions)
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_customer_id", sa.String(255)),
        sa.Column("company_id", sa.String(64)),
        sa.Column("tier", sa.String(50)),
        sa.Column("status", sa.String(30), nullable=False, server_default="incomplete"),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_company_id", "subscriptions", ["company_id"])

    # Email delivery log (Resend)
    op.create_table(
        "email_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("resend_id", sa.String(255), nullable=False, unique=True),
        sa.Column("company_id", sa.String(64)),
        sa.Column("to_email", sa.String(320)),
        sa.Column("subject", sa.Text),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("bounced_at", sa.DateTime(timezone=True)),
        sa.Column("complained_at", sa.DateTime(timezone=True)),
        sa.Column("opened_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("clicked_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("opened_at", sa.DateTime(timezone=True)),
        sa.Column("clicked_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_email_logs_status", "email_logs", ["status"])
    op.create_index("ix_email_logs_company_id", "email_logs", ["company_id"])

    # SMS delivery log (Twilio)
    op.create_table(
        "sms_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("twilio_sid", sa.String(64), nullable=False, unique=True),
        sa.Column("company_id", sa.String(64)),
        sa.Column("to_phone", sa.String(20)),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("error_code", sa.String(20)),
        sa.Column("error_message", sa.Text),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sms_logs_status", "sms_logs", ["status"])
    op.create_index("ix_sms_logs_company_id", "sms_logs", ["company_id"])


def downgrade() -> None:
    op.drop_table("sms_logs")
    op.drop_table("email_logs")
    op.drop_table("subscriptions")
    op.drop_table("payments")
    op.drop_table("webhook_audit_log")
    op.drop_table("webhook_events")
