"""
FileChange model - one row per file touched by a pull request, refreshed on
every synchronize. Keyed by (pull_request_id, file_path).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from devpulse.database import Base


class FileChange(Base):
    __tablename__ = "file_changes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    repository_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repositories.id"), nullable=False
    )
    pull_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pull_requests.id"), nullable=False, index=True
    )
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    previous_file_path: Mapped[Optional[str]] = mapped_column(String(500))
    directory: Mapped[Optional[str]] = mapped_column(String(500))
    file_extension: Mapped[Optional[str]] = mapped_column(String(20))
    change_type: Mapped[str] = mapped_column(
        String(20), default="modified"
    )  # added, modified, removed, renamed, copied, changed, unchanged

    additions: Mapped[int] = mapped_column(Integer, default=0)
    deletions: Mapped[int] = mapped_column(Integer, default=0)
    changes: Mapped[int] = mapped_column(Integer, default=0)

    # Classification
    file_type: Mapped[str] = mapped_column(
        String(20), default="other"
    )  # code, frontend, config, documentation, image, other
    is_test_file: Mapped[bool] = mapped_column(Boolean, default=False)
    is_config_file: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("pull_request_id", "file_path", name="uq_file_changes_pull_request_path"),
    )

    def __repr__(self) -> str:
        return f"<FileChange {self.file_path} ({self.change_type})>"
