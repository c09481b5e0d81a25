"""
Event processor - one handler per EventCategory.

Handlers run inside the worker's transaction and must be safe to re-run in
full: every write is an upsert by natural key. A payload missing a required
field raises PayloadValidationError, which the worker treats like any other
failure (retry, then dead letter).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.task_queue import TaskQueue
from devpulse.models.webhook_event import WebhookEvent
from devpulse.schemas.github_payloads import (
    PullRequestEvent,
    PullRequestReviewEvent,
    CheckRunEvent,
    WorkflowRunEvent,
    CheckSuiteEvent,
    StatusEvent,
    PushEvent,
)
from devpulse.services.pull_requests import (
    apply_pull_request,
    apply_review,
    recompute_review_metrics,
    set_ci_status_for_sha,
)
from devpulse.services.repositories import upsert_repository, upsert_developer
from devpulse.services.routing import EventCategory, Lane, parse_category
from devpulse.services.task_dispatch import TaskType, enqueue_task
from devpulse.services.test_runs import (
    CiRun,
    map_conclusion,
    upsert_test_run,
    upsert_test_results,
    associate_pull_request,
    refresh_pull_request_ci,
)
from devpulse.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

STATUS_STATE_MAP = {
    "success": "success",
    "failure": "failure",
    "error": "failure",
    "pending": "pending",
}


class PayloadValidationError(Exception):
    """The payload is missing a field the handler requires."""


class UnsupportedEventError(Exception):
    """No handler is registered for the event category."""


@dataclass
class ProcessingContext:
    db: AsyncSession
    event: WebhookEvent
    now: datetime = field(default_factory=utcnow)
    stale_after_days: int = 14
    # synchronize events queue a file analysis only when the GitHub API is configured
    analyze_files: bool = False
    enqueued: list[TaskQueue] = field(default_factory=list)


Handler = Callable[[ProcessingContext, dict], Awaitable[dict]]


def _parse(schema: type[BaseModel], payload: dict, event_type: str) -> BaseModel:
    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        missing = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise PayloadValidationError(f"Invalid {event_type} payload: {missing}") from e


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_pull_request(ctx: ProcessingContext, payload: dict) -> dict:
    event = _parse(PullRequestEvent, payload, "pull_request")
    repository_id = await upsert_repository(ctx.db, event.repository)
    author_id = None
    if event.pull_request.user is not None:
        author_id = await upsert_developer(ctx.db, event.pull_request.user)

    pull_request = await apply_pull_request(
        ctx.db, repository_id, event.pull_request, author_id,
        now=ctx.now, stale_after_days=ctx.stale_after_days,
    )

    file_analysis_task_id = None
    if event.action == "synchronize" and ctx.analyze_files:
        task = await enqueue_task(
            ctx.db,
            TaskType.ANALYZE_PR_FILES,
            Lane.LOW,
            payload={"pull_request_id": str(pull_request.id)},
        )
        ctx.enqueued.append(task)
        file_analysis_task_id = str(task.id)

    return {
        "status": "processed",
        "pull_request_id": str(pull_request.id),
        "number": pull_request.number,
        "state": pull_request.state,
        "file_analysis_task_id": file_analysis_task_id,
    }


async def handle_pull_request_review(ctx: ProcessingContext, payload: dict) -> dict:
    event = _parse(PullRequestReviewEvent, payload, "pull_request_review")
    repository_id = await upsert_repository(ctx.db, event.repository)
    author_id = None
    if event.pull_request.user is not None:
        author_id = await upsert_developer(ctx.db, event.pull_request.user)

    # Reviews can reference a stale snapshot; re-apply it before recomputing
    pull_request = await apply_pull_request(
        ctx.db, repository_id, event.pull_request, author_id,
        now=ctx.now, stale_after_days=ctx.stale_after_days,
    )

    review = event.review
    if event.action == "dismissed":
        review = review.model_copy(update={"state": "dismissed"})
    reviewer_id = None
    if review.user is not None:
        reviewer_id = await upsert_developer(ctx.db, review.user)
    await apply_review(ctx.db, pull_request, review, reviewer_id)

    pull_request = await recompute_review_metrics(
        ctx.db, pull_request.id, now=ctx.now, stale_after_days=ctx.stale_after_days,
    )
    return {
        "status": "processed",
        "pull_request_id": str(pull_request.id),
        "review_status": pull_request.review_status,
        "approvals_count": pull_request.approvals_count,
    }


async def _process_ci_run(ctx: ProcessingContext, repository_id, run: CiRun) -> dict:
    test_run = await upsert_test_run(ctx.db, repository_id, run)
    if run.report is not None:
        await upsert_test_results(ctx.db, test_run, run.report)

    pull_request = await associate_pull_request(ctx.db, test_run)
    if pull_request is not None:
        await refresh_pull_request_ci(ctx.db, pull_request, test_run)

    flaky_task_id = None
    if (test_run.failed_tests or 0) > 0:
        task = await enqueue_task(
            ctx.db,
            TaskType.DETECT_FLAKY_TESTS,
            Lane.LOW,
            payload={"test_run_id": str(test_run.id)},
        )
        ctx.enqueued.append(task)
        flaky_task_id = str(task.id)

    return {
        "status": "processed",
        "test_run_id": str(test_run.id),
        "run_status": test_run.status,
        "failed_tests": test_run.failed_tests,
        "pull_request_id": str(pull_request.id) if pull_request else None,
        "flaky_task_id": flaky_task_id,
    }


async def handle_check_run(ctx: ProcessingContext, payload: dict) -> dict:
    event = _parse(CheckRunEvent, payload, "check_run")
    if event.check_run.status != "completed":
        return {"status": "skipped", "reason": f"check run status {event.check_run.status}"}

    repository_id = await upsert_repository(ctx.db, event.repository)
    return await _process_ci_run(ctx, repository_id, CiRun.from_check_run(event.check_run))


async def handle_workflow_run(ctx: ProcessingContext, payload: dict) -> dict:
    event = _parse(WorkflowRunEvent, payload, "workflow_run")
    if event.workflow_run.status != "completed":
        return {"status": "skipped", "reason": f"workflow run status {event.workflow_run.status}"}

    repository_id = await upsert_repository(ctx.db, event.repository)
    return await _process_ci_run(ctx, repository_id, CiRun.from_workflow_run(event.workflow_run))


async def handle_check_suite(ctx: ProcessingContext, payload: dict) -> dict:
    """
    Suites summarize runs that arrive as their own check_run events, so a
    suite only refreshes ci_status; it never creates a TestRun.
    """
    event = _parse(CheckSuiteEvent, payload, "check_suite")
    if event.check_suite.status not in (None, "completed"):
        return {"status": "skipped", "reason": f"check suite status {event.check_suite.status}"}

    repository_id = await upsert_repository(ctx.db, event.repository)
    ci_status = map_conclusion(event.check_suite.conclusion)
    updated = await set_ci_status_for_sha(ctx.db, repository_id, event.check_suite.head_sha, ci_status)
    return {"status": "processed", "ci_status": ci_status, "pull_requests_updated": updated}


async def handle_status(ctx: ProcessingContext, payload: dict) -> dict:
    event = _parse(StatusEvent, payload, "status")
    repository_id = await upsert_repository(ctx.db, event.repository)
    ci_status = STATUS_STATE_MAP.get(event.state.lower())
    if ci_status is None:
        logger.info("Status %s for %s is not a CI state, pull requests left as is", event.state, event.sha[:8])
        return {"status": "skipped", "reason": f"unmapped status state {event.state}", "pull_requests_updated": 0}
    updated = await set_ci_status_for_sha(ctx.db, repository_id, event.sha, ci_status)
    logger.info(
        "Status %s for %s updated %d pull requests",
        event.state, event.sha[:8], updated,
    )
    return {"status": "processed", "ci_status": ci_status, "pull_requests_updated": updated}


async def handle_push(ctx: ProcessingContext, payload: dict) -> dict:
    """Audit only: pushes are kept in the ledger and summarized here."""
    event = _parse(PushEvent, payload, "push")
    head_commit = event.head_commit.id if event.head_commit else event.after
    logger.info(
        "Push to %s on %s: %d commits",
        event.ref, event.repository.full_name, len(event.commits),
    )
    return {
        "status": "recorded",
        "ref": event.ref,
        "commits": len(event.commits),
        "head_commit": head_commit,
        "forced": event.forced,
    }


HANDLERS: dict[EventCategory, Handler] = {
    EventCategory.PULL_REQUEST: handle_pull_request,
    EventCategory.PULL_REQUEST_REVIEW: handle_pull_request_review,
    EventCategory.CHECK_RUN: handle_check_run,
    EventCategory.CHECK_SUITE: handle_check_suite,
    EventCategory.WORKFLOW_RUN: handle_workflow_run,
    EventCategory.STATUS: handle_status,
    EventCategory.PUSH: handle_push,
}


async def process_event(ctx: ProcessingContext, handlers: Optional[dict[EventCategory, Handler]] = None) -> dict:
    """Route the ledger event to its category handler."""
    category = parse_category(ctx.event.event_type)
    handler = (handlers or HANDLERS).get(category) if category else None
    if handler is None:
        raise UnsupportedEventError(f"No handler for event type {ctx.event.event_type!r}")

    logger.info(
        "Processing %s.%s delivery=%s",
        ctx.event.event_type, ctx.event.action, ctx.event.delivery_id,
        extra={"delivery_id": ctx.event.delivery_id, "event_type": ctx.event.event_type},
    )
    return await handler(ctx, ctx.event.payload or {})
