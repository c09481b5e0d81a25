"""
CI result processing - check runs and workflow runs become TestRun rows.

Both shapes are normalized into a CiRun and upserted by
(repository, external run id, provider). Per-test results from the run's
test_results report are upserted by (run, test identifier), so re-delivery
of the same run converges instead of duplicating history.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.pull_request import PullRequest
from devpulse.models.test_run import TestRun, TestResult
from devpulse.schemas.github_payloads import CheckRun, WorkflowRun, TestResultsReport, TestCaseResult
from devpulse.utils.metrics import seconds_between
from devpulse.utils.upsert import upsert, load_fresh

logger = logging.getLogger(__name__)

CONCLUSION_STATUS = {
    "success": "success",
    "failure": "failure",
    "neutral": "success",
    "cancelled": "canceled",
    "skipped": "skipped",
    "timed_out": "error",
    "action_required": "error",
}

CI_PROVIDERS_BY_APP = {
    "github actions": "github_actions",
    "circleci": "circleci",
    "travis ci": "travis",
    "jenkins": "jenkins",
}

TEST_STATUS_ALIASES = {
    "passed": "passed",
    "pass": "passed",
    "success": "passed",
    "failed": "failed",
    "fail": "failed",
    "failure": "failed",
    "error": "error",
    "errored": "error",
    "skipped": "skipped",
    "skip": "skipped",
}

FAILED_TEST_STATUSES = ("failed", "error")


def map_conclusion(conclusion: Optional[str]) -> str:
    return CONCLUSION_STATUS.get((conclusion or "").lower(), "pending")


def detect_ci_provider(app_name: Optional[str]) -> str:
    return CI_PROVIDERS_BY_APP.get((app_name or "").strip().lower(), "unknown")


def normalize_test_status(status: str) -> str:
    return TEST_STATUS_ALIASES.get(status.strip().lower(), "error")


def make_test_identifier(test: TestCaseResult) -> str:
    """Stable identity of a test across runs: file::class::name."""
    return "::".join([test.file or "", test.test_class or "", test.name])


@dataclass
class CiRun:
    external_id: str
    run_source: str
    ci_provider: str
    head_sha: str
    status: str
    name: Optional[str] = None
    branch: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    run_url: Optional[str] = None
    report: Optional[TestResultsReport] = None

    @classmethod
    def from_check_run(cls, check_run: CheckRun) -> "CiRun":
        return cls(
            external_id=check_run.id,
            run_source="check_run",
            ci_provider=detect_ci_provider(check_run.app.name if check_run.app else None),
            head_sha=check_run.head_sha,
            status=map_conclusion(check_run.conclusion),
            name=check_run.name,
            branch=check_run.check_suite.head_branch if check_run.check_suite else None,
            started_at=check_run.started_at,
            completed_at=check_run.completed_at,
            run_url=check_run.html_url or check_run.details_url,
            report=check_run.test_results,
        )

    @classmethod
    def from_workflow_run(cls, workflow_run: WorkflowRun) -> "CiRun":
        return cls(
            external_id=workflow_run.id,
            run_source="workflow_run",
            ci_provider="github_actions",
            head_sha=workflow_run.head_sha,
            status=map_conclusion(workflow_run.conclusion),
            name=workflow_run.name,
            branch=workflow_run.head_branch,
            started_at=workflow_run.run_started_at or workflow_run.created_at,
            completed_at=workflow_run.updated_at,
            run_url=workflow_run.html_url,
            report=workflow_run.test_results,
        )


def _report_counts(report: TestResultsReport) -> dict:
    """Counts from explicit totals, falling back to the individual test list."""
    statuses = [normalize_test_status(t.status) for t in report.tests]
    failed = sum(1 for s in statuses if s in FAILED_TEST_STATUSES)
    passed = sum(1 for s in statuses if s == "passed")
    skipped = sum(1 for s in statuses if s == "skipped")

    counts = {
        "total_tests": report.total if report.total is not None else len(statuses),
        "passed_tests": report.passed if report.passed is not None else passed,
        "failed_tests": report.failed if report.failed is not None else failed,
        "skipped_tests": report.skipped if report.skipped is not None else skipped,
    }
    if report.coverage is not None:
        counts["line_coverage"] = report.coverage.line
        counts["branch_coverage"] = report.coverage.branch
        counts["method_coverage"] = report.coverage.method
    return counts


async def upsert_test_run(db: AsyncSession, repository_id: uuid.UUID, run: CiRun) -> TestRun:
    values = {
        "repository_id": repository_id,
        "external_id": run.external_id,
        "ci_provider": run.ci_provider,
        "run_source": run.run_source,
        "commit_sha": run.head_sha,
        "status": run.status,
    }
    optional = {
        "name": run.name,
        "branch": run.branch,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "run_url": run.run_url,
        "duration_seconds": seconds_between(run.started_at, run.completed_at),
    }
    values.update({k: v for k, v in optional.items() if v is not None})
    if run.report is not None:
        values.update(_report_counts(run.report))

    test_run_id = await upsert(
        db, TestRun, values, conflict_columns=["repository_id", "external_id", "ci_provider"],
    )
    return await load_fresh(db, TestRun, test_run_id)


async def upsert_test_results(
    db: AsyncSession,
    test_run: TestRun,
    report: TestResultsReport,
) -> int:
    """Write one TestResult per reported test. Returns how many were written."""
    for test in report.tests:
        values = {
            "test_run_id": test_run.id,
            "repository_id": test_run.repository_id,
            "test_identifier": make_test_identifier(test),
            "test_name": test.name,
            "test_class": test.test_class,
            "test_file": test.file,
            "status": normalize_test_status(test.status),
            "duration_ms": test.duration_ms,
            "error_message": test.error_message,
            "retry_count": test.retry_count,
            "executed_at": test_run.completed_at or test_run.started_at,
        }
        await upsert(db, TestResult, values, conflict_columns=["test_run_id", "test_identifier"])
    return len(report.tests)


async def associate_pull_request(db: AsyncSession, test_run: TestRun) -> Optional[PullRequest]:
    """Link the run to the most recently updated pull request at its head commit."""
    result = await db.execute(
        select(PullRequest)
        .where(
            and_(
                PullRequest.repository_id == test_run.repository_id,
                PullRequest.head_sha == test_run.commit_sha,
            )
        )
        .order_by(PullRequest.updated_at.desc())
        .limit(1)
    )
    pull_request = result.scalar_one_or_none()
    if pull_request is not None:
        test_run.pull_request_id = pull_request.id
        await db.flush()
    return pull_request


async def refresh_pull_request_ci(
    db: AsyncSession,
    pull_request: PullRequest,
    test_run: TestRun,
) -> None:
    """
    Set ci_status from the run and aggregate test statistics over every run
    recorded for the pull request's current head commit.
    """
    pull_request.ci_status = test_run.status

    result = await db.execute(
        select(
            func.coalesce(func.sum(TestRun.total_tests), 0),
            func.coalesce(func.sum(TestRun.passed_tests), 0),
            func.coalesce(func.sum(TestRun.failed_tests), 0),
            func.coalesce(func.sum(TestRun.skipped_tests), 0),
            func.avg(TestRun.line_coverage),
        ).where(
            and_(
                TestRun.pull_request_id == pull_request.id,
                TestRun.commit_sha == test_run.commit_sha,
            )
        )
    )
    total, passed, failed, skipped, coverage = result.one()
    pull_request.tests_total = int(total)
    pull_request.tests_passed = int(passed)
    pull_request.tests_failed = int(failed)
    pull_request.tests_skipped = int(skipped)
    pull_request.test_coverage = round(float(coverage), 2) if coverage is not None else None
    await db.flush()
