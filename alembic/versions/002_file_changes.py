"""Pull request file analysis: file_changes table, is_hot flag, file metrics

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("pull_requests", sa.Column("is_hot", sa.Boolean, nullable=False, server_default=sa.false()))
    op.add_column("pull_requests", sa.Column("file_metrics", postgresql.JSONB, nullable=True))
    op.add_column("pull_requests", sa.Column("risk_score", sa.Float, nullable=True))

    op.create_table(
        "file_changes",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("repository_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("repositories.id"), nullable=False),
        sa.Column("pull_request_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("pull_requests.id"), nullable=False),
        sa.Column("file_path", sa.String(500), nullable=False),
        sa.Column("previous_file_path", sa.String(500), nullable=True),
        sa.Column("directory", sa.String(500), nullable=True),
        sa.Column("file_extension", sa.String(20), nullable=True),
        sa.Column("change_type", sa.String(20), nullable=False, server_default="modified"),
        sa.Column("additions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("deletions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("changes", sa.Integer, nullable=False, server_default="0"),
        sa.Column("file_type", sa.String(20), nullable=False, server_default="other"),
        sa.Column("is_test_file", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_config_file", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("pull_request_id", "file_path", name="uq_file_changes_pull_request_path"),
    )
    op.create_index("ix_file_changes_pull_request_id", "file_changes", ["pull_request_id"])


def downgrade() -> None:
    op.drop_index("ix_file_changes_pull_request_id", table_name="file_changes")
    op.drop_table("file_changes")
    op.drop_column("pull_requests", "risk_score")
    op.drop_column("pull_requests", "file_metrics")
    op.drop_column("pull_requests", "is_hot")
