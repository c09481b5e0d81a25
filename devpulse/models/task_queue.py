"""
TaskQueue model - durable per-lane work queue.
A claimed task holds a lease; an expired lease means the executor died or
timed out and the attempt counts as a failure.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from devpulse.database import Base


class TaskQueue(Base):
    __tablename__ = "task_queue"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    task_type: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # process_webhook, detect_flaky_tests

    lane: Mapped[str] = mapped_column(String(10), nullable=False, default="default")  # high, default, low

    payload: Mapped[Optional[dict]] = mapped_column(JSONB)

    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, processing, completed, dead

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    # NULL defers to the worker pool's policy for the task type
    max_attempts: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Enables delayed tasks and retry backoff
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    result_data: Mapped[Optional[dict]] = mapped_column(JSONB)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_task_queue_lane_due", "lane", "status", "scheduled_at"),
        Index("ix_task_queue_lease", "status", "lease_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<TaskQueue {self.task_type}@{self.lane} ({self.status})>"
