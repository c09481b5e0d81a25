"""Initial schema: webhook ledger, task queue, dead letters, PR metrics, test runs, alerts

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Source-control identities
    op.create_table(
        "repositories",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False, server_default="github"),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("owner", sa.String(255), nullable=True),
        sa.Column("default_branch", sa.String(255), nullable=True),
        sa.Column("html_url", sa.String(500), nullable=True),
        sa.Column("is_private", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("provider", "external_id", name="uq_repositories_provider_external_id"),
    )

    op.create_table(
        "developers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(20), nullable=False, server_default="github"),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("username", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider", "external_id", name="uq_developers_provider_external_id"),
    )

    # Webhook ledger - every accepted delivery, keyed by delivery id
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("delivery_id", sa.String(255), nullable=False, unique=True),
        sa.Column("provider", sa.String(20), nullable=False, server_default="github"),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("action", sa.String(50), nullable=True),
        sa.Column("repository_external_id", sa.String(64), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=True),
        sa.Column("signature", sa.String(100), nullable=True),
        sa.Column("signature_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lane", sa.String(10), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_duration_ms", sa.Float, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(255), nullable=True),
        sa.Column("headers", postgresql.JSONB, nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index("ix_webhook_events_repository_external_id", "webhook_events", ["repository_external_id"])
    op.create_index("ix_webhook_events_correlation_id", "webhook_events", ["correlation_id"])
    op.create_index("ix_webhook_events_status_retry_after", "webhook_events", ["status", "retry_after"])

    # Durable per-lane work queue
    op.create_table(
        "task_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_type", sa.String(50), nullable=False),
        sa.Column("lane", sa.String(10), nullable=False, server_default="default"),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("result_data", postgresql.JSONB, nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_task_queue_lane_due", "task_queue", ["lane", "status", "scheduled_at"])
    op.create_index("ix_task_queue_lease", "task_queue", ["status", "lease_expires_at"])

    # Dead letters - tasks that exhausted their retries
    op.create_table(
        "dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("task_type", sa.String(50), nullable=False),
        sa.Column("lane", sa.String(10), nullable=False),
        sa.Column("webhook_event_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("delivery_id", sa.String(255), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("error_traceback", sa.Text, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="dead"),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_dead_letters_task_id", "dead_letters", ["task_id"])
    op.create_index("ix_dead_letters_webhook_event_id", "dead_letters", ["webhook_event_id"])
    op.create_index("ix_dead_letters_delivery_id", "dead_letters", ["delivery_id"])
    op.create_index("ix_dead_letters_status", "dead_letters", ["status"])

    # Pull requests and reviews
    op.create_table(
        "pull_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("repository_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("repositories.id"), nullable=False),
        sa.Column("author_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("developers.id"), nullable=True),
        sa.Column("external_id", sa.String(64), nullable=True),
        sa.Column("number", sa.Integer, nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="open"),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("body", sa.Text, nullable=True),
        sa.Column("head_branch", sa.String(255), nullable=True),
        sa.Column("base_branch", sa.String(255), nullable=True),
        sa.Column("head_sha", sa.String(64), nullable=True),
        sa.Column("base_sha", sa.String(64), nullable=True),
        sa.Column("html_url", sa.String(500), nullable=True),
        sa.Column("is_draft", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("labels", postgresql.JSONB, nullable=True),
        sa.Column("additions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("deletions", sa.Integer, nullable=False, server_default="0"),
        sa.Column("changed_files", sa.Integer, nullable=False, server_default="0"),
        sa.Column("commits_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("comments_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("review_comments_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("review_status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("approvals_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("ci_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("tests_total", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tests_passed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tests_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tests_skipped", sa.Integer, nullable=False, server_default="0"),
        sa.Column("test_coverage", sa.Float, nullable=True),
        sa.Column("cycle_time", sa.Integer, nullable=True),
        sa.Column("time_to_first_review", sa.Integer, nullable=True),
        sa.Column("time_to_approval", sa.Integer, nullable=True),
        sa.Column("time_to_merge", sa.Integer, nullable=True),
        sa.Column("first_commit_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_review_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_stale", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint("repository_id", "number", name="uq_pull_requests_repository_number"),
    )
    op.create_index("ix_pull_requests_head_sha", "pull_requests", ["head_sha"])
    op.create_index("ix_pull_requests_repository_head_sha", "pull_requests", ["repository_id", "head_sha"])

    op.create_table(
        "pull_request_reviews",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("pull_request_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("pull_requests.id"), nullable=False),
        sa.Column("reviewer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("developers.id"), nullable=True),
        sa.Column("external_id", sa.String(64), nullable=False, unique=True),
        sa.Column("state", sa.String(30), nullable=False),
        sa.Column("body", sa.Text, nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_pull_request_reviews_pull_request_id", "pull_request_reviews", ["pull_request_id"])

    # CI runs and per-test results
    op.create_table(
        "test_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("repository_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("repositories.id"), nullable=False),
        sa.Column("pull_request_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("pull_requests.id"), nullable=True),
        sa.Column("ci_provider", sa.String(30), nullable=False),
        sa.Column("run_source", sa.String(20), nullable=False),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("branch", sa.String(255), nullable=True),
        sa.Column("commit_sha", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("total_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("passed_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("flaky_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("flaky_tests_details", postgresql.JSONB, nullable=True),
        sa.Column("line_coverage", sa.Float, nullable=True),
        sa.Column("branch_coverage", sa.Float, nullable=True),
        sa.Column("method_coverage", sa.Float, nullable=True),
        sa.Column("duration_seconds", sa.Integer, nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_url", sa.String(500), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "repository_id", "external_id", "ci_provider",
            name="uq_test_runs_repository_external_provider",
        ),
    )
    op.create_index("ix_test_runs_pull_request_id", "test_runs", ["pull_request_id"])
    op.create_index("ix_test_runs_commit_sha", "test_runs", ["commit_sha"])

    op.create_table(
        "test_results",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("test_run_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("test_runs.id"), nullable=False),
        sa.Column("repository_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("repositories.id"), nullable=False),
        sa.Column("test_identifier", sa.String(1000), nullable=False),
        sa.Column("test_name", sa.String(500), nullable=False),
        sa.Column("test_class", sa.String(500), nullable=True),
        sa.Column("test_file", sa.String(1000), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("is_flaky", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("test_run_id", "test_identifier", name="uq_test_results_run_identifier"),
    )
    op.create_index(
        "ix_test_results_history", "test_results", ["repository_id", "test_identifier", "created_at"],
    )

    # Alert rules and deduplicated alerts
    op.create_table(
        "alert_rules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("code", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("rule_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False, server_default="medium"),
        sa.Column("conditions", postgresql.JSONB, nullable=True),
        sa.Column("notification_channels", postgresql.JSONB, nullable=True),
        sa.Column("cooldown_minutes", sa.Integer, nullable=False, server_default="60"),
        sa.Column("max_alerts_per_day", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("trigger_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "alerts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("alert_rule_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("alert_rules.id"), nullable=False),
        sa.Column("repository_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("repositories.id"), nullable=True),
        sa.Column("pull_request_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("pull_requests.id"), nullable=True),
        sa.Column("alert_type", sa.String(50), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("context", postgresql.JSONB, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("dedup_key", sa.String(255), nullable=False),
        sa.Column("occurrence_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_alerts_repository_id", "alerts", ["repository_id"])
    op.create_index("ix_alerts_fingerprint", "alerts", ["fingerprint"])
    # One open alert per dedup key; resolved alerts drop out of the index
    op.create_index(
        "uq_alerts_open_dedup_key", "alerts", ["dedup_key"],
        unique=True, postgresql_where=sa.text("status <> 'resolved'"),
    )


def downgrade() -> None:
    op.drop_index("uq_alerts_open_dedup_key", table_name="alerts")
    op.drop_index("ix_alerts_fingerprint", table_name="alerts")
    op.drop_index("ix_alerts_repository_id", table_name="alerts")
    op.drop_table("alerts")
    op.drop_table("alert_rules")

    op.drop_index("ix_test_results_history", table_name="test_results")
    op.drop_table("test_results")
    op.drop_index("ix_test_runs_commit_sha", table_name="test_runs")
    op.drop_index("ix_test_runs_pull_request_id", table_name="test_runs")
    op.drop_table("test_runs")

    op.drop_index("ix_pull_request_reviews_pull_request_id", table_name="pull_request_reviews")
    op.drop_table("pull_request_reviews")
    op.drop_index("ix_pull_requests_repository_head_sha", table_name="pull_requests")
    op.drop_index("ix_pull_requests_head_sha", table_name="pull_requests")
    op.drop_table("pull_requests")

    op.drop_index("ix_dead_letters_status", table_name="dead_letters")
    op.drop_index("ix_dead_letters_delivery_id", table_name="dead_letters")
    op.drop_index("ix_dead_letters_webhook_event_id", table_name="dead_letters")
    op.drop_index("ix_dead_letters_task_id", table_name="dead_letters")
    op.drop_table("dead_letters")

    op.drop_index("ix_task_queue_lease", table_name="task_queue")
    op.drop_index("ix_task_queue_lane_due", table_name="task_queue")
    op.drop_table("task_queue")

    op.drop_index("ix_webhook_events_status_retry_after", table_name="webhook_events")
    op.drop_index("ix_webhook_events_correlation_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_repository_external_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_event_type", table_name="webhook_events")
    op.drop_table("webhook_events")

    op.drop_table("developers")
    op.drop_table("repositories")
