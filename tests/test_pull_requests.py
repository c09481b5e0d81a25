"""
Tests for pull request and review processing: upserts, partial payloads,
review aggregation and the derived time metrics.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, func

from devpulse.models.pull_request import PullRequest, PullRequestReview
from devpulse.models.repository import Repository, Developer
from devpulse.schemas.github_payloads import GitHubPullRequest
from devpulse.services.event_processor import PayloadValidationError
from devpulse.services.pull_requests import derive_state, is_stale, summarize_reviews

from payloads import pull_request_payload, review_payload, run_event

NOW = datetime(2024, 1, 2, tzinfo=timezone.utc)


async def _pull_request(db, number: int = 7) -> PullRequest:
    result = await db.execute(
        select(PullRequest)
        .where(PullRequest.number == number)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestDeriveState:
    def test_open(self):
        assert derive_state(GitHubPullRequest(number=1, state="open")) == "open"

    def test_closed_without_merge(self):
        assert derive_state(GitHubPullRequest(number=1, state="closed", merged=False)) == "closed"

    def test_merged_flag(self):
        assert derive_state(GitHubPullRequest(number=1, state="closed", merged=True)) == "merged"

    def test_merged_at_without_flag(self):
        pr = GitHubPullRequest(number=1, state="closed", merged_at="2024-01-01T00:00:00Z")
        assert derive_state(pr) == "merged"


class TestIsStale:
    def test_open_and_idle(self):
        last = NOW - timedelta(days=14)
        assert is_stale("open", last, NOW, 14) is True

    def test_open_and_recent(self):
        assert is_stale("open", NOW - timedelta(days=13, hours=23), NOW, 14) is False

    def test_closed_never_stale(self):
        assert is_stale("merged", NOW - timedelta(days=90), NOW, 14) is False

    def test_naive_timestamp_treated_as_utc(self):
        assert is_stale("open", datetime(2023, 12, 1), NOW, 14) is True


# ---------------------------------------------------------------------------
# Pull request events
# ---------------------------------------------------------------------------

class TestPullRequestEvents:
    @pytest.mark.asyncio
    async def test_opened_creates_rows(self, db):
        result, _ = await run_event(db, "pull_request", pull_request_payload(), now=NOW)

        assert result["status"] == "processed"
        assert result["state"] == "open"
        pr = await _pull_request(db)
        assert pr.title == "Improve widgets #7"
        assert pr.external_id == "9007"
        assert pr.head_sha == "a" * 40
        assert pr.head_branch == "feature-7"
        assert pr.base_branch == "main"
        assert pr.labels == ["enhancement"]
        assert pr.additions == 120
        assert pr.commits_count == 3
        assert pr.review_status == "pending"
        assert pr.ci_status == "pending"
        assert pr.cycle_time is None
        assert pr.is_stale is False

        repo = (await db.execute(select(Repository))).scalar_one()
        assert repo.full_name == "acme/widgets"
        assert repo.owner == "acme"
        author = (await db.execute(select(Developer))).scalar_one()
        assert author.username == "octocat"
        assert pr.author_id == author.id

    @pytest.mark.asyncio
    async def test_redelivery_updates_in_place(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        await run_event(
            db, "pull_request",
            pull_request_payload(action="synchronize", head_sha="c" * 40, updated_at="2024-01-01T11:00:00Z"),
            now=NOW,
        )

        assert await _count(db, PullRequest) == 1
        assert await _count(db, Repository) == 1
        assert await _count(db, Developer) == 1
        assert (await _pull_request(db)).head_sha == "c" * 40

    @pytest.mark.asyncio
    async def test_missing_fields_keep_stored_values(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)

        payload = pull_request_payload(action="edited")
        for key in ("title", "labels", "additions"):
            del payload["pull_request"][key]
        await run_event(db, "pull_request", payload, now=NOW)

        pr = await _pull_request(db)
        assert pr.title == "Improve widgets #7"
        assert pr.labels == ["enhancement"]
        assert pr.additions == 120

    @pytest.mark.asyncio
    async def test_merge_sets_state_and_cycle_time(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        await run_event(
            db, "pull_request",
            pull_request_payload(
                action="closed", state="closed", merged=True,
                merged_at="2024-01-02T10:00:00Z", updated_at="2024-01-02T10:00:00Z",
            ),
            now=NOW,
        )

        pr = await _pull_request(db)
        assert pr.state == "merged"
        assert pr.cycle_time == 86400
        assert pr.time_to_merge is None  # never approved
        assert pr.is_stale is False

    @pytest.mark.asyncio
    async def test_closed_without_merge(self, db):
        await run_event(db, "pull_request", pull_request_payload(action="closed", state="closed"), now=NOW)
        pr = await _pull_request(db)
        assert pr.state == "closed"
        assert pr.cycle_time is None

    @pytest.mark.asyncio
    async def test_idle_open_pull_request_is_stale(self, db):
        later = datetime(2024, 1, 20, tzinfo=timezone.utc)
        await run_event(db, "pull_request", pull_request_payload(), now=later)
        assert (await _pull_request(db)).is_stale is True

    @pytest.mark.asyncio
    async def test_stale_threshold_is_configurable(self, db):
        later = datetime(2024, 1, 20, tzinfo=timezone.utc)
        await run_event(db, "pull_request", pull_request_payload(), now=later, stale_after_days=30)
        assert (await _pull_request(db)).is_stale is False

    @pytest.mark.asyncio
    async def test_missing_pull_request_section_raises(self, db):
        payload = pull_request_payload()
        del payload["pull_request"]
        with pytest.raises(PayloadValidationError):
            await run_event(db, "pull_request", payload, now=NOW)


# ---------------------------------------------------------------------------
# Review aggregation
# ---------------------------------------------------------------------------

def _review(reviewer: str, state: str, minute: int) -> PullRequestReview:
    return PullRequestReview(
        external_id=f"{reviewer}-{minute}",
        reviewer_id=uuid.uuid5(uuid.NAMESPACE_DNS, reviewer),
        state=state,
        submitted_at=datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc),
    )


def _summary(*reviews):
    return summarize_reviews(list(reviews))


class TestSummarizeReviews:
    def test_no_reviews(self):
        summary = summarize_reviews([])
        assert summary["review_status"] == "pending"
        assert summary["approvals_count"] == 0
        assert summary["first_review_at"] is None

    def test_single_approval(self):
        summary = _summary(_review("alice", "approved", 5))
        assert summary["review_status"] == "approved"
        assert summary["approvals_count"] == 1
        assert summary["approved_at"] == datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)

    def test_changes_requested_wins_over_other_approval(self):
        summary = _summary(_review("alice", "approved", 5), _review("bob", "changes_requested", 6))
        assert summary["review_status"] == "changes_requested"
        assert summary["approvals_count"] == 1

    def test_latest_verdict_per_reviewer(self):
        summary = _summary(_review("alice", "changes_requested", 5), _review("alice", "approved", 9))
        assert summary["review_status"] == "approved"
        assert summary["approvals_count"] == 1

    def test_comment_does_not_override_verdict(self):
        summary = _summary(_review("alice", "approved", 5), _review("alice", "commented", 9))
        assert summary["review_status"] == "approved"

    def test_comments_only(self):
        summary = _summary(_review("alice", "commented", 5))
        assert summary["review_status"] == "commented"
        assert summary["first_review_at"] == datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)

    def test_dismissal_withdraws_approval(self):
        summary = _summary(_review("alice", "approved", 5), _review("alice", "dismissed", 9))
        assert summary["approvals_count"] == 0
        assert summary["review_status"] == "commented"
        assert summary["approved_at"] is None

    def test_pending_reviews_ignored(self):
        summary = _summary(_review("alice", "pending", 5))
        assert summary["review_status"] == "pending"
        assert summary["first_review_at"] is None

    def test_approved_at_is_earliest_standing_approval(self):
        summary = _summary(_review("alice", "approved", 9), _review("bob", "approved", 5))
        assert summary["approvals_count"] == 2
        assert summary["approved_at"] == datetime(2024, 1, 1, 12, 5, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Review events
# ---------------------------------------------------------------------------

class TestReviewEvents:
    @pytest.mark.asyncio
    async def test_approval_sets_review_metrics(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        result, _ = await run_event(db, "pull_request_review", review_payload(1, "APPROVED"), now=NOW)

        assert result["review_status"] == "approved"
        assert result["approvals_count"] == 1
        pr = await _pull_request(db)
        assert pr.review_status == "approved"
        assert pr.time_to_first_review == 7200
        assert pr.time_to_approval == 7200

        review = (await db.execute(select(PullRequestReview))).scalar_one()
        assert review.state == "approved"
        assert review.external_id == "1"

    @pytest.mark.asyncio
    async def test_review_redelivery_is_idempotent(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        await run_event(db, "pull_request_review", review_payload(1, "approved"), now=NOW)
        await run_event(db, "pull_request_review", review_payload(1, "approved"), now=NOW)

        assert await _count(db, PullRequestReview) == 1
        assert (await _pull_request(db)).approvals_count == 1

    @pytest.mark.asyncio
    async def test_review_before_pull_request_event(self, db):
        await run_event(db, "pull_request_review", review_payload(1, "commented"), now=NOW)

        pr = await _pull_request(db)
        assert pr.review_status == "commented"
        assert pr.title == "Improve widgets #7"

    @pytest.mark.asyncio
    async def test_dismissed_action_withdraws_approval(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        await run_event(db, "pull_request_review", review_payload(1, "approved"), now=NOW)
        await run_event(
            db, "pull_request_review",
            review_payload(1, "approved", action="dismissed"),
            now=NOW,
        )

        pr = await _pull_request(db)
        assert pr.approvals_count == 0
        assert pr.approved_at is None
        assert (await db.execute(select(PullRequestReview.state))).scalar_one() == "dismissed"

    @pytest.mark.asyncio
    async def test_time_to_merge_measured_from_approval(self, db):
        await run_event(db, "pull_request", pull_request_payload(), now=NOW)
        await run_event(db, "pull_request_review", review_payload(1, "approved"), now=NOW)
        await run_event(
            db, "pull_request",
            pull_request_payload(
                action="closed", state="closed", merged=True,
                merged_at="2024-01-01T15:00:00Z", updated_at="2024-01-01T15:00:00Z",
            ),
            now=NOW,
        )

        pr = await _pull_request(db)
        assert pr.state == "merged"
        assert pr.cycle_time == 5 * 3600
        assert pr.time_to_merge == 3 * 3600
        assert pr.review_status == "approved"
