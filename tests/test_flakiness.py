"""
Tests for devpulse/services/flakiness.py - the flakiness rule, confidence
scoring and history analysis of a completed run.
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from devpulse.models.repository import Repository
from devpulse.models.test_run import TestRun, TestResult
from devpulse.services.flakiness import (
    FlakinessAnalyzer,
    FlakinessConfig,
    HistoryStats,
    classify_history,
    confidence_score,
    is_flaky,
)

NOW = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
TEST_CLASS = "tests.test_widgets.TestWidget"


def _identifier(name: str) -> str:
    return f"tests/test_widgets.py::{TEST_CLASS}::{name}"


async def _seed_repository(db) -> Repository:
    repo = Repository(id=uuid.uuid4(), provider="github", external_id="1001", full_name="acme/widgets")
    db.add(repo)
    await db.flush()
    return repo


async def _seed_run(db, repo: Repository, external_id: str, results: dict[str, str], created_at: datetime) -> TestRun:
    run = TestRun(
        id=uuid.uuid4(),
        repository_id=repo.id,
        ci_provider="github_actions",
        run_source="check_run",
        external_id=external_id,
        commit_sha="a" * 40,
        status="failure" if "failed" in results.values() else "success",
        failed_tests=sum(1 for s in results.values() if s == "failed"),
        created_at=created_at,
    )
    db.add(run)
    await db.flush()
    for name, status in results.items():
        db.add(TestResult(
            test_run_id=run.id,
            repository_id=repo.id,
            test_identifier=_identifier(name),
            test_name=name,
            test_class=TEST_CLASS,
            status=status,
            created_at=created_at,
        ))
    await db.flush()
    return run


# ---------------------------------------------------------------------------
# Flakiness rule
# ---------------------------------------------------------------------------

class TestIsFlaky:
    def test_intermittent_failures_are_flaky(self):
        assert is_flaky(HistoryStats(total=10, failures=3)) is True

    def test_never_failing_is_not_flaky(self):
        assert is_flaky(HistoryStats(total=10, failures=0)) is False

    def test_always_failing_is_not_flaky(self):
        assert is_flaky(HistoryStats(total=10, failures=10)) is False

    def test_small_sample_is_not_flaky(self):
        assert is_flaky(HistoryStats(total=4, failures=2)) is False

    def test_no_history_is_not_flaky(self):
        assert is_flaky(HistoryStats(total=0, failures=0)) is False

    def test_rate_bounds_are_inclusive(self):
        assert is_flaky(HistoryStats(total=20, failures=1)) is True
        assert is_flaky(HistoryStats(total=20, failures=19)) is True

    def test_custom_bounds(self):
        config = FlakinessConfig(min_failure_rate=0.2, min_sample_size=3)
        assert is_flaky(HistoryStats(total=10, failures=1), config) is False
        assert is_flaky(HistoryStats(total=3, failures=1), config) is True

    def test_classify_history_counts_errors_as_failures(self):
        stats = classify_history(["passed"] * 7 + ["failed", "error", "failed"])
        assert stats == HistoryStats(total=10, failures=3)

    def test_classify_history_returns_none_when_not_flaky(self):
        assert classify_history(["passed"] * 10) is None


class TestConfidenceScore:
    def test_peaks_at_even_split_with_full_sample(self):
        assert confidence_score(HistoryStats(total=20, failures=10)) == pytest.approx(1.0)

    def test_blends_sample_and_rate(self):
        # sample 10/20 = 0.5, rate 1 - |0.3 - 0.5| * 2 = 0.6
        assert confidence_score(HistoryStats(total=10, failures=3)) == pytest.approx(0.55)

    def test_grows_with_sample_size(self):
        small = confidence_score(HistoryStats(total=10, failures=3))
        large = confidence_score(HistoryStats(total=40, failures=12))
        assert large > small

    def test_falls_away_from_even_split(self):
        even = confidence_score(HistoryStats(total=20, failures=10))
        skewed = confidence_score(HistoryStats(total=20, failures=2))
        assert skewed < even


# ---------------------------------------------------------------------------
# Run analysis
# ---------------------------------------------------------------------------

class TestAnalyzeRun:
    @pytest.mark.asyncio
    async def test_flags_only_intermittent_failures(self, db):
        repo = await _seed_repository(db)
        for i in range(10):
            await _seed_run(
                db, repo, f"prior-{i}",
                {
                    "test_a": "failed" if i < 3 else "passed",
                    "test_b": "failed",
                },
                NOW - timedelta(days=1, minutes=i),
            )
        current = await _seed_run(
            db, repo, "current",
            {"test_a": "failed", "test_b": "failed", "test_c": "failed", "test_e": "passed"},
            NOW,
        )

        analysis = await FlakinessAnalyzer(FlakinessConfig()).analyze_run(db, current.id, now=NOW)

        assert analysis.analyzed_tests == 3
        assert [f.test_name for f in analysis.findings] == ["test_a"]
        finding = analysis.findings[0]
        assert finding.failure_rate == 30.0
        assert finding.total_runs == 10
        assert finding.recent_failures == 3
        assert finding.confidence_score == 0.55
        assert finding.test_identifier == _identifier("test_a")
        assert analysis.alerts == []

        run = (await db.execute(
            select(TestRun).where(TestRun.id == current.id).execution_options(populate_existing=True)
        )).scalar_one()
        assert run.flaky_tests == 1
        assert run.flaky_tests_details[0]["test_name"] == "test_a"

        flagged = (await db.execute(
            select(TestResult.test_name).where(
                TestResult.test_run_id == current.id, TestResult.is_flaky.is_(True),
            )
        )).scalars().all()
        assert flagged == ["test_a"]

    @pytest.mark.asyncio
    async def test_history_outside_lookback_is_ignored(self, db):
        repo = await _seed_repository(db)
        for i in range(10):
            await _seed_run(
                db, repo, f"old-{i}",
                {"test_a": "failed" if i < 3 else "passed"},
                NOW - timedelta(days=31),
            )
        current = await _seed_run(db, repo, "current", {"test_a": "failed"}, NOW)

        analysis = await FlakinessAnalyzer(FlakinessConfig()).analyze_run(db, current.id, now=NOW)
        assert analysis.findings == []

    @pytest.mark.asyncio
    async def test_history_limit_takes_newest_results(self, db):
        repo = await _seed_repository(db)
        # Newest five all pass, older five all fail
        for i in range(10):
            await _seed_run(
                db, repo, f"prior-{i}",
                {"test_a": "passed" if i < 5 else "failed"},
                NOW - timedelta(hours=i + 1),
            )
        current = await _seed_run(db, repo, "current", {"test_a": "failed"}, NOW)

        config = FlakinessConfig(history_limit=5)
        analysis = await FlakinessAnalyzer(config).analyze_run(db, current.id, now=NOW)
        assert analysis.findings == []

    @pytest.mark.asyncio
    async def test_other_repository_history_not_used(self, db):
        repo = await _seed_repository(db)
        other = Repository(id=uuid.uuid4(), provider="github", external_id="2002", full_name="acme/other")
        db.add(other)
        await db.flush()
        for i in range(10):
            await _seed_run(db, other, f"other-{i}", {"test_a": "failed" if i < 3 else "passed"}, NOW - timedelta(hours=1))
        current = await _seed_run(db, repo, "current", {"test_a": "failed"}, NOW)

        analysis = await FlakinessAnalyzer(FlakinessConfig()).analyze_run(db, current.id, now=NOW)
        assert analysis.findings == []

    @pytest.mark.asyncio
    async def test_unknown_run_raises(self, db):
        with pytest.raises(LookupError):
            await FlakinessAnalyzer(FlakinessConfig()).analyze_run(db, uuid.uuid4(), now=NOW)

    @pytest.mark.asyncio
    async def test_findings_forwarded_to_alert_manager(self, db):
        repo = await _seed_repository(db)
        for i in range(10):
            await _seed_run(db, repo, f"prior-{i}", {"test_a": "failed" if i < 3 else "passed"}, NOW - timedelta(hours=i + 1))
        current = await _seed_run(db, repo, "current", {"test_a": "failed"}, NOW)

        class RecordingManager:
            def __init__(self):
                self.calls = []

            async def record_flaky_test(self, db, test_run, finding, now=None):
                self.calls.append((test_run.id, finding.test_name, now))
                return "outcome"

        manager = RecordingManager()
        analysis = await FlakinessAnalyzer(FlakinessConfig(), manager).analyze_run(db, current.id, now=NOW)

        assert manager.calls == [(current.id, "test_a", NOW)]
        assert analysis.alerts == ["outcome"]
