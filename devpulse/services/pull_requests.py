"""
Pull request upserts and derived metrics.

Snapshot fields are written only when the payload carried them. Derived
fields (state, cycle time, staleness, review metrics) are recomputed from
the stored row after the upsert, under a row lock, so concurrent pull
request and review events converge on the same values.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.pull_request import PullRequest, PullRequestReview
from devpulse.schemas.github_payloads import GitHubPullRequest, GitHubReview
from devpulse.utils.metrics import seconds_between
from devpulse.utils.timestamps import ensure_utc, utcnow
from devpulse.utils.upsert import upsert

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_DAYS = 14

# A pull request is hot once discussion or diff size crosses either threshold
HOT_COMMENTS_THRESHOLD = 10
HOT_LINES_CHANGED_THRESHOLD = 1000

# payload field -> column
_SNAPSHOT_FIELDS = {
    "title": "title",
    "body": "body",
    "html_url": "html_url",
    "draft": "is_draft",
    "merged_at": "merged_at",
    "closed_at": "closed_at",
    "additions": "additions",
    "deletions": "deletions",
    "changed_files": "changed_files",
    "commits": "commits_count",
    "comments": "comments_count",
    "review_comments": "review_comments_count",
}

# Review states that replace a reviewer's previous verdict
_VERDICT_STATES = {"approved", "changes_requested", "dismissed"}


def derive_state(pr: GitHubPullRequest) -> str:
    """A merge flag (or merge timestamp) overrides the raw open/closed state."""
    if pr.merged or pr.merged_at is not None:
        return "merged"
    return pr.state


def is_stale(state: str, last_activity_at: Optional[datetime], now: datetime, stale_after_days: int) -> bool:
    if state != "open" or last_activity_at is None:
        return False
    return now - ensure_utc(last_activity_at) >= timedelta(days=stale_after_days)


def is_hot(comments_count: Optional[int], additions: Optional[int], deletions: Optional[int]) -> bool:
    if (comments_count or 0) >= HOT_COMMENTS_THRESHOLD:
        return True
    return (additions or 0) + (deletions or 0) >= HOT_LINES_CHANGED_THRESHOLD


def _snapshot_values(repository_id: uuid.UUID, pr: GitHubPullRequest, author_id: Optional[uuid.UUID]) -> dict:
    fields_set = pr.model_fields_set
    values = {
        "repository_id": repository_id,
        "number": pr.number,
        "state": derive_state(pr),
    }
    if pr.id is not None:
        values["external_id"] = pr.id
    if author_id is not None:
        values["author_id"] = author_id

    for field, column in _SNAPSHOT_FIELDS.items():
        if field in fields_set:
            values[column] = getattr(pr, field)

    if "head" in fields_set and pr.head is not None:
        if "ref" in pr.head.model_fields_set:
            values["head_branch"] = pr.head.ref
        if "sha" in pr.head.model_fields_set:
            values["head_sha"] = pr.head.sha
    if "base" in fields_set and pr.base is not None:
        if "ref" in pr.base.model_fields_set:
            values["base_branch"] = pr.base.ref
        if "sha" in pr.base.model_fields_set:
            values["base_sha"] = pr.base.sha
    if "labels" in fields_set:
        values["labels"] = [label.name for label in (pr.labels or [])]
    if pr.created_at is not None:
        values["first_commit_at"] = pr.created_at
    if pr.updated_at is not None:
        values["last_activity_at"] = pr.updated_at

    return values


async def _lock_pull_request(db: AsyncSession, pull_request_id: uuid.UUID) -> PullRequest:
    result = await db.execute(
        select(PullRequest)
        .where(PullRequest.id == pull_request_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _refresh_time_metrics(pull_request: PullRequest, now: datetime, stale_after_days: int) -> None:
    first_commit_at = ensure_utc(pull_request.first_commit_at)
    merged_at = ensure_utc(pull_request.merged_at)
    approved_at = ensure_utc(pull_request.approved_at)

    pull_request.cycle_time = seconds_between(first_commit_at, merged_at)
    pull_request.time_to_merge = seconds_between(approved_at, merged_at)
    pull_request.is_stale = is_stale(
        pull_request.state, pull_request.last_activity_at, now, stale_after_days,
    )
    pull_request.is_hot = is_hot(
        pull_request.comments_count, pull_request.additions, pull_request.deletions,
    )


async def apply_pull_request(
    db: AsyncSession,
    repository_id: uuid.UUID,
    pr: GitHubPullRequest,
    author_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
) -> PullRequest:
    """Upsert the pull request by (repository, number) and recompute derived metrics."""
    now = now or utcnow()
    values = _snapshot_values(repository_id, pr, author_id)
    pull_request_id = await upsert(
        db, PullRequest, values, conflict_columns=["repository_id", "number"],
    )

    pull_request = await _lock_pull_request(db, pull_request_id)
    _refresh_time_metrics(pull_request, now, stale_after_days)
    await db.flush()

    logger.info(
        "Pull request #%d upserted: state=%s stale=%s",
        pull_request.number, pull_request.state, pull_request.is_stale,
    )
    return pull_request


async def apply_file_metrics(
    db: AsyncSession,
    pull_request_id: uuid.UUID,
    metrics: dict,
    changed_files: int,
    now: Optional[datetime] = None,
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
) -> PullRequest:
    """Store file analysis totals on the pull request and recompute derived metrics."""
    now = now or utcnow()
    pull_request = await _lock_pull_request(db, pull_request_id)
    pull_request.changed_files = changed_files
    pull_request.additions = metrics["total_additions"]
    pull_request.deletions = metrics["total_deletions"]
    pull_request.file_metrics = metrics
    pull_request.risk_score = metrics["risk_score"]
    _refresh_time_metrics(pull_request, now, stale_after_days)
    await db.flush()
    return pull_request


async def apply_review(
    db: AsyncSession,
    pull_request: PullRequest,
    review: GitHubReview,
    reviewer_id: Optional[uuid.UUID] = None,
) -> uuid.UUID:
    """Upsert a review by its external id."""
    values = {
        "pull_request_id": pull_request.id,
        "external_id": review.id,
        "state": review.state,
    }
    if reviewer_id is not None:
        values["reviewer_id"] = reviewer_id
    if "body" in review.model_fields_set:
        values["body"] = review.body
    if review.submitted_at is not None:
        values["submitted_at"] = review.submitted_at

    return await upsert(db, PullRequestReview, values, conflict_columns=["external_id"])


def summarize_reviews(reviews: list[PullRequestReview]) -> dict:
    """
    Aggregate review state from every stored review of a pull request.

    Each reviewer's latest verdict (approved, changes_requested, dismissed)
    wins; plain comments never override a verdict. Dismissal withdraws an
    approval.
    """
    ordered = sorted(
        reviews,
        key=lambda r: (ensure_utc(r.submitted_at) is None, ensure_utc(r.submitted_at) or datetime.min, r.external_id),
    )

    verdicts: dict[str, PullRequestReview] = {}
    commenters: set[str] = set()
    first_review_at = None
    for review in ordered:
        if review.state == "pending":
            continue
        reviewer = str(review.reviewer_id or review.external_id)
        submitted_at = ensure_utc(review.submitted_at)
        if submitted_at is not None and (first_review_at is None or submitted_at < first_review_at):
            first_review_at = submitted_at
        if review.state in _VERDICT_STATES:
            verdicts[reviewer] = review
        else:
            commenters.add(reviewer)

    approvals = [r for r in verdicts.values() if r.state == "approved"]
    changes_requested = any(r.state == "changes_requested" for r in verdicts.values())

    if changes_requested:
        review_status = "changes_requested"
    elif approvals:
        review_status = "approved"
    elif commenters or verdicts:
        review_status = "commented"
    else:
        review_status = "pending"

    approval_times = [ensure_utc(r.submitted_at) for r in approvals if r.submitted_at is not None]
    return {
        "review_status": review_status,
        "approvals_count": len(approvals),
        "first_review_at": first_review_at,
        "approved_at": min(approval_times) if approval_times else None,
    }


async def recompute_review_metrics(
    db: AsyncSession,
    pull_request_id: uuid.UUID,
    now: Optional[datetime] = None,
    stale_after_days: int = DEFAULT_STALE_AFTER_DAYS,
) -> PullRequest:
    """Recompute review-derived metrics from the aggregate review state."""
    now = now or utcnow()
    pull_request = await _lock_pull_request(db, pull_request_id)

    result = await db.execute(
        select(PullRequestReview)
        .where(PullRequestReview.pull_request_id == pull_request_id)
        .execution_options(populate_existing=True)
    )
    summary = summarize_reviews(list(result.scalars().all()))

    first_commit_at = ensure_utc(pull_request.first_commit_at)
    pull_request.review_status = summary["review_status"]
    pull_request.approvals_count = summary["approvals_count"]
    pull_request.first_review_at = summary["first_review_at"]
    pull_request.approved_at = summary["approved_at"]
    pull_request.time_to_first_review = seconds_between(first_commit_at, summary["first_review_at"])
    pull_request.time_to_approval = seconds_between(first_commit_at, summary["approved_at"])
    _refresh_time_metrics(pull_request, now, stale_after_days)
    await db.flush()
    return pull_request


async def set_ci_status_for_sha(
    db: AsyncSession,
    repository_id: uuid.UUID,
    sha: str,
    ci_status: str,
) -> int:
    """Set ci_status on every pull request at this head commit. Returns rows touched."""
    result = await db.execute(
        update(PullRequest)
        .where(
            and_(
                PullRequest.repository_id == repository_id,
                PullRequest.head_sha == sha,
            )
        )
        .values(ci_status=ci_status, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
