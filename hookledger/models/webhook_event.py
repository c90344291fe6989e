"""
Webhook event ledger - one row per (provider, event_id), never deleted.

Only two code paths write this table:
- engine.idempotency (insert-if-absent claim, reclaim for retry)
- engine.recorder / workers (status updates by primary key, guarded by status)
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from hookledger.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Idempotency key
    provider: Mapped[str] = mapped_column(String(20), nullable=False)  # stripe, resend, twilio
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Redacted body, retained for audit and replay
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    payload_hash: Mapped[Optional[str]] = mapped_column(String(64))

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, processing, processed, failed, skipped
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processing_duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_category: Mapped[Optional[str]] = mapped_column(String(30))
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Provenance (write-once)
    http_headers: Mapped[Optional[dict]] = mapped_column(JSONB)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(Text)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event_id"),
        Index("ix_webhook_events_status", "status"),
        Index("ix_webhook_events_created_at", "created_at"),
        Index("ix_webhook_events_provider_created_at", "provider", "created_at"),
        Index("ix_webhook_events_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider}:{self.event_id} status={self.status}>"
