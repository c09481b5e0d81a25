"""
PullRequest model - one row per (repository, number), mutated in place.
Lifecycle: open -> closed | merged. Time metrics are stored in seconds.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    String, Text, Float, Integer, Boolean, DateTime, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from devpulse.database import Base


class PullRequest(Base):
    __tablename__ = "pull_requests"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    repository_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("repositories.id"), nullable=False
    )
    author_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("developers.id")
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(64))
    number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Content
    state: Mapped[str] = mapped_column(String(20), default="open", nullable=False)  # open, closed, merged
    title: Mapped[Optional[str]] = mapped_column(String(500))
    body: Mapped[Optional[str]] = mapped_column(Text)
    head_branch: Mapped[Optional[str]] = mapped_column(String(255))
    base_branch: Mapped[Optional[str]] = mapped_column(String(255))
    head_sha: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    base_sha: Mapped[Optional[str]] = mapped_column(String(64))
    html_url: Mapped[Optional[str]] = mapped_column(String(500))
    is_draft: Mapped[bool] = mapped_column(Boolean, default=False)
    labels: Mapped[Optional[list]] = mapped_column(JSONB, default=list)

    # Size statistics
    additions: Mapped[int] = mapped_column(Integer, default=0)
    deletions: Mapped[int] = mapped_column(Integer, default=0)
    changed_files: Mapped[int] = mapped_column(Integer, default=0)
    commits_count: Mapped[int] = mapped_column(Integer, default=0)
    comments_count: Mapped[int] = mapped_column(Integer, default=0)
    review_comments_count: Mapped[int] = mapped_column(Integer, default=0)

    # Review state (recomputed from pull_request_reviews)
    review_status: Mapped[str] = mapped_column(
        String(30), default="pending"
    )  # pending, commented, changes_requested, approved
    approvals_count: Mapped[int] = mapped_column(Integer, default=0)

    # CI
    ci_status: Mapped[str] = mapped_column(
        String(20), default="pending"
    )  # pending, success, failure, canceled, skipped, error
    tests_total: Mapped[int] = mapped_column(Integer, default=0)
    tests_passed: Mapped[int] = mapped_column(Integer, default=0)
    tests_failed: Mapped[int] = mapped_column(Integer, default=0)
    tests_skipped: Mapped[int] = mapped_column(Integer, default=0)
    test_coverage: Mapped[Optional[float]] = mapped_column(Float)

    # Time metrics (seconds)
    cycle_time: Mapped[Optional[int]] = mapped_column(Integer)
    time_to_first_review: Mapped[Optional[int]] = mapped_column(Integer)
    time_to_approval: Mapped[Optional[int]] = mapped_column(Integer)
    time_to_merge: Mapped[Optional[int]] = mapped_column(Integer)

    # Timestamps from the provider
    first_commit_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    first_review_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    merged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False)
    is_hot: Mapped[bool] = mapped_column(Boolean, default=False)  # heavy discussion or a large diff

    # File analysis (refreshed on synchronize)
    file_metrics: Mapped[Optional[dict]] = mapped_column(JSONB)
    risk_score: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("repository_id", "number", name="uq_pull_requests_repository_number"),
        Index("ix_pull_requests_repository_head_sha", "repository_id", "head_sha"),
    )

    def __repr__(self) -> str:
        return f"<PullRequest #{self.number} ({self.state})>"


class PullRequestReview(Base):
    __tablename__ = "pull_request_reviews"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    pull_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pull_requests.id"), nullable=False, index=True
    )
    reviewer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("developers.id")
    )
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    state: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # approved, changes_requested, commented, dismissed, pending
    body: Mapped[Optional[str]] = mapped_column(Text)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<PullRequestReview {self.external_id} ({self.state})>"
