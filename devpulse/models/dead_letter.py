"""
Dead letter records - tasks that exhausted their retry budget.
Kept for inspection and manual replay; never deleted by the pipeline.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from devpulse.database import Base


class DeadLetter(Base):
    __tablename__ = "dead_letters"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    task_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    task_type = Column(String(50), nullable=False)
    lane = Column(String(10), nullable=False)
    webhook_event_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    delivery_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSONB, nullable=False)
    error_message = Column(Text, nullable=False)
    error_traceback = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    status = Column(
        String(20), nullable=False, default="dead", server_default="dead", index=True
    )  # dead, replayed
    correlation_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    replayed_at = Column(DateTime(timezone=True), nullable=True)
