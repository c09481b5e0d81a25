"""
Webhook event ledger - every accepted delivery is recorded before processing.
delivery_id is the idempotency key; rows are never deleted and serve as the
audit trail and the source for manual replay.

Lifecycle: pending -> processing -> completed | failed; unsupported events
are written directly as skipped.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, Integer, Float, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from devpulse.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    delivery_id = Column(String(255), nullable=False, unique=True)
    provider = Column(String(20), nullable=False, default="github", server_default="github")
    event_type = Column(String(50), nullable=False, index=True)
    action = Column(String(50), nullable=True)
    repository_external_id = Column(String(64), nullable=True, index=True)
    payload = Column(JSONB, nullable=False)
    payload_hash = Column(String(64), nullable=True)
    signature = Column(String(100), nullable=True)
    signature_verified = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    lane = Column(String(10), nullable=True)
    status = Column(
        String(20), nullable=False, default="pending", server_default="pending"
    )  # pending, processing, completed, failed, skipped
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_duration_ms = Column(Float, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    retry_after = Column(DateTime(timezone=True), nullable=True)
    source_ip = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    headers = Column(JSONB, nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_webhook_events_status_retry_after", "status", "retry_after"),
    )
