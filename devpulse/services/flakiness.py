"""
Flaky test detection.

A failing test is flaky when its recent history shows it both passing and
failing: the failure rate must fall inside [min_failure_rate, max_failure_rate]
over at least min_sample_size prior results. Tests that almost always pass or
almost always fail are regressions, not flakiness. A test with no history is
never flaky.

Confidence blends sample size (saturating at full_confidence_sample results)
with how close the failure rate is to 50%, the most ambiguous signal.
"""
import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.test_run import TestRun, TestResult
from devpulse.services.test_runs import FAILED_TEST_STATUSES
from devpulse.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FlakinessConfig:
    lookback_days: int = 30
    history_limit: int = 50
    min_failure_rate: float = 0.05
    max_failure_rate: float = 0.95
    min_sample_size: int = 5
    full_confidence_sample: int = 20

    @classmethod
    def from_settings(cls, settings) -> "FlakinessConfig":
        return cls(
            lookback_days=settings.flaky_lookback_days,
            history_limit=settings.flaky_history_limit,
            min_failure_rate=settings.flaky_min_failure_rate,
            max_failure_rate=settings.flaky_max_failure_rate,
            min_sample_size=settings.flaky_min_sample_size,
        )


@dataclass(frozen=True)
class HistoryStats:
    total: int
    failures: int

    @property
    def failure_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.failures / self.total


@dataclass
class FlakyFinding:
    test_result_id: str
    test_identifier: str
    test_name: str
    test_class: Optional[str]
    failure_rate: float  # percent, 2 decimals
    total_runs: int
    recent_failures: int
    confidence_score: float  # 0..1, 2 decimals

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnalysisResult:
    test_run_id: str
    analyzed_tests: int = 0
    findings: list[FlakyFinding] = field(default_factory=list)
    alerts: list = field(default_factory=list)


def confidence_score(stats: HistoryStats, config: FlakinessConfig = FlakinessConfig()) -> float:
    """Mean of sample-size confidence and rate confidence, unrounded."""
    sample_confidence = min(stats.total / config.full_confidence_sample, 1.0)
    rate_confidence = 1 - abs(stats.failure_rate - 0.5) * 2
    return (sample_confidence + rate_confidence) / 2


def is_flaky(stats: HistoryStats, config: FlakinessConfig = FlakinessConfig()) -> bool:
    if stats.total == 0 or stats.total < config.min_sample_size:
        return False
    return config.min_failure_rate <= stats.failure_rate <= config.max_failure_rate


def classify_history(statuses: list[str], config: FlakinessConfig = FlakinessConfig()) -> Optional[HistoryStats]:
    """Return the history stats when the statuses indicate flakiness, else None."""
    stats = HistoryStats(
        total=len(statuses),
        failures=sum(1 for s in statuses if s in FAILED_TEST_STATUSES),
    )
    if not is_flaky(stats, config):
        return None
    return stats


class FlakinessAnalyzer:
    """Runs detection for one completed TestRun and forwards findings to alerting."""

    def __init__(self, config: FlakinessConfig, alert_manager=None):
        self.config = config
        self.alert_manager = alert_manager

    async def load_history(
        self,
        db: AsyncSession,
        repository_id: uuid.UUID,
        identifier: str,
        exclude_run_id: uuid.UUID,
        now: datetime,
    ) -> list[str]:
        """Statuses of prior results for the test, newest first, capped at history_limit."""
        since = now - timedelta(days=self.config.lookback_days)
        result = await db.execute(
            select(TestResult.status)
            .where(
                and_(
                    TestResult.repository_id == repository_id,
                    TestResult.test_identifier == identifier,
                    TestResult.test_run_id != exclude_run_id,
                    TestResult.created_at >= since,
                )
            )
            .order_by(TestResult.created_at.desc())
            .limit(self.config.history_limit)
        )
        return list(result.scalars().all())

    async def analyze_run(
        self,
        db: AsyncSession,
        test_run_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> AnalysisResult:
        now = now or utcnow()
        test_run = await db.get(TestRun, test_run_id)
        if test_run is None:
            raise LookupError(f"Test run {test_run_id} not found")

        result = await db.execute(
            select(TestResult).where(
                and_(
                    TestResult.test_run_id == test_run.id,
                    TestResult.status.in_(FAILED_TEST_STATUSES),
                )
            )
        )
        failed_results = list(result.scalars().all())
        analysis = AnalysisResult(test_run_id=str(test_run.id), analyzed_tests=len(failed_results))

        for test_result in failed_results:
            history = await self.load_history(
                db, test_run.repository_id, test_result.test_identifier, test_run.id, now,
            )
            stats = classify_history(history, self.config)
            if stats is None:
                continue

            test_result.is_flaky = True
            analysis.findings.append(
                FlakyFinding(
                    test_result_id=str(test_result.id),
                    test_identifier=test_result.test_identifier,
                    test_name=test_result.test_name,
                    test_class=test_result.test_class,
                    failure_rate=round(stats.failure_rate * 100, 2),
                    total_runs=stats.total,
                    recent_failures=stats.failures,
                    confidence_score=round(confidence_score(stats, self.config), 2),
                )
            )

        test_run.flaky_tests = len(analysis.findings)
        test_run.flaky_tests_details = [f.to_dict() for f in analysis.findings]
        await db.flush()

        if self.alert_manager is not None:
            for finding in analysis.findings:
                outcome = await self.alert_manager.record_flaky_test(db, test_run, finding, now=now)
                analysis.alerts.append(outcome)

        logger.info(
            "Flakiness analysis for run %s: %d failed, %d flaky",
            str(test_run.id)[:8], len(failed_results), len(analysis.findings),
        )
        return analysis
