"""
Task processor - per-lane worker pool over the task_queue table.

Each lane runs a fixed number of asyncio executors. An executor claims the
next due task with a guarded UPDATE (pending -> processing), runs it under the
task type's RetryPolicy timeout and records the outcome. Idle executors block
on BRPOP of the lane's Redis key and fall back to polling when Redis is down.

Webhook tasks additionally claim their ledger row, so two executors never
process the same delivery at once. Failures are retried with the policy's
backoff; exhausted tasks become dead letters and raise a critical alert.
Leases that expire (crashed or hung executor) count as a failed attempt.
"""
import asyncio
import logging
import traceback
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, and_, or_, update

from devpulse.models.dead_letter import DeadLetter
from devpulse.models.task_queue import TaskQueue
from devpulse.models.webhook_event import WebhookEvent
from devpulse.services.routing import Lane
from devpulse.services.task_dispatch import TaskType, notify_enqueued
from devpulse.utils.alerting import AlertType, send_alert
from devpulse.utils.logging import correlation_scope
from devpulse.utils.metrics import Timer
from devpulse.utils.redis_client import heartbeat, wait_for_lane
from devpulse.utils.timestamps import utcnow
from devpulse.workers.retry_policy import RetryPolicy, policy_for, policies_from_settings

logger = logging.getLogger(__name__)

CLAIM_BATCH_SIZE = 5
LEASE_GRACE_SECONDS = 30
LOST_CLAIM_RETRY_SECONDS = 1
MAX_ERROR_LENGTH = 2000


class LedgerClaimLost(Exception):
    """Another executor holds the ledger row; the task goes back to pending."""


TaskHandler = Callable[["WorkerPool", TaskQueue], Awaitable[dict]]


async def claim_ledger_entry(db, event_id: uuid.UUID, now: datetime) -> bool:
    """
    Atomically move a ledger row to processing.
    Eligible rows are pending, or failed with retry_after due.
    """
    result = await db.execute(
        update(WebhookEvent)
        .where(
            and_(
                WebhookEvent.id == event_id,
                or_(
                    WebhookEvent.status == "pending",
                    and_(
                        WebhookEvent.status == "failed",
                        WebhookEvent.retry_after.is_not(None),
                        WebhookEvent.retry_after <= now,
                    ),
                ),
            )
        )
        .values(status="processing", processing_started_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class WorkerPool:
    """Per-lane executors with retry, backoff and dead-letter handling."""

    def __init__(
        self,
        session_factory=None,
        lane_sizes: Optional[dict[str, int]] = None,
        policies: Optional[dict[str, RetryPolicy]] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        handlers: Optional[dict[str, TaskHandler]] = None,
        settings=None,
    ):
        if settings is None:
            from devpulse.config import get_settings
            settings = get_settings()
        if session_factory is None:
            from devpulse.database import async_session_factory
            session_factory = async_session_factory

        self.settings = settings
        self.session_factory = session_factory
        self.lane_sizes = lane_sizes or {
            Lane.HIGH.value: settings.workers_high,
            Lane.DEFAULT.value: settings.workers_default,
            Lane.LOW.value: settings.workers_low,
        }
        self.policies = policies or policies_from_settings(settings)
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        self.clock = clock
        self.handlers = handlers or {
            TaskType.PROCESS_WEBHOOK: _handle_process_webhook,
            TaskType.DETECT_FLAKY_TESTS: _handle_detect_flaky_tests,
            TaskType.ANALYZE_PR_FILES: _handle_analyze_pr_files,
        }
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> list[asyncio.Task]:
        for lane, size in self.lane_sizes.items():
            for index in range(size):
                self._tasks.append(
                    asyncio.create_task(self._executor_loop(lane, index), name=f"executor-{lane}-{index}")
                )
        logger.info(
            "Worker pool started: %s",
            ", ".join(f"{lane}={size}" for lane, size in self.lane_sizes.items()),
        )
        return self._tasks

    async def stop(self, timeout: float = 10.0) -> None:
        """Cancel executors and wait up to `timeout` seconds for them to exit."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=timeout)
            if pending:
                logger.warning("%d executors did not stop within %.0fs", len(pending), timeout)
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Worker pool stopped (%d executors)", len(self._tasks))
        self._tasks = []

    async def _executor_loop(self, lane: str, index: int) -> None:
        name = f"{lane}-{index}"
        logger.info("Executor %s started", name)
        while True:
            try:
                ran = await self.run_once(lane)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Executor %s cycle error: %s", name, str(e), exc_info=True)
                await send_alert(
                    AlertType.WORKER_CRASHED,
                    f"Executor {name} cycle failed: {str(e)[:200]}",
                    extra={"lane": lane},
                )
                ran = False

            await heartbeat(f"executor:{name}")
            if ran:
                continue

            try:
                await wait_for_lane(lane, self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
                await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_once(self, lane: str) -> bool:
        """Sweep expired leases, then claim and execute one due task. Returns True if a task ran."""
        await self.reclaim_expired_leases(lane)
        task = await self.claim_next(lane)
        if task is None:
            return False
        await self.execute(task)
        return True

    async def drain(self, lanes: Optional[list[str]] = None, max_tasks: int = 100) -> int:
        """Run due tasks until every lane is empty. Returns how many ran."""
        lanes = lanes or [lane.value for lane in Lane]
        executed = 0
        while executed < max_tasks:
            progressed = False
            for lane in lanes:
                if await self.run_once(lane):
                    executed += 1
                    progressed = True
            if not progressed:
                break
        return executed

    async def claim_next(self, lane: str) -> Optional[TaskQueue]:
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                select(TaskQueue.id, TaskQueue.task_type)
                .where(
                    and_(
                        TaskQueue.lane == lane,
                        TaskQueue.status == "pending",
                        TaskQueue.scheduled_at <= now,
                    )
                )
                .order_by(TaskQueue.scheduled_at, TaskQueue.created_at)
                .limit(CLAIM_BATCH_SIZE)
                .with_for_update(skip_locked=True)
            )
            candidates = result.all()

            for task_id, task_type in candidates:
                policy = policy_for(task_type, self.policies)
                lease = now + timedelta(seconds=policy.timeout_seconds + LEASE_GRACE_SECONDS)
                claimed = await db.execute(
                    update(TaskQueue)
                    .where(and_(TaskQueue.id == task_id, TaskQueue.status == "pending"))
                    .values(
                        status="processing",
                        attempts=TaskQueue.attempts + 1,
                        started_at=now,
                        lease_expires_at=lease,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    await db.commit()
                    task = await db.get(TaskQueue, task_id, populate_existing=True)
                    return task

            await db.commit()
        return None

    async def reclaim_expired_leases(self, lane: str) -> int:
        """Treat tasks whose lease ran out as failed attempts."""
        now = self.clock()
        reclaimed = 0
        async with self.session_factory() as db:
            result = await db.execute(
                select(TaskQueue.id).where(
                    and_(
                        TaskQueue.lane == lane,
                        TaskQueue.status == "processing",
                        TaskQueue.lease_expires_at < now,
                    )
                )
            )
            expired_ids = list(result.scalars().all())
            for task_id in expired_ids:
                taken = await db.execute(
                    update(TaskQueue)
                    .where(
                        and_(
                            TaskQueue.id == task_id,
                            TaskQueue.status == "processing",
                            TaskQueue.lease_expires_at < now,
                        )
                    )
                    .values(lease_expires_at=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if taken.rowcount == 1:
                    reclaimed += 1
            await db.commit()

            tasks = []
            for task_id in expired_ids:
                task = await db.get(TaskQueue, task_id, populate_existing=True)
                if task is not None and task.status == "processing" and task.lease_expires_at is None:
                    tasks.append(task)

        for task in tasks:
            logger.warning(
                "Task lease expired: id=%s type=%s attempt=%d",
                str(task.id)[:8], task.task_type, task.attempts,
                extra={"task_id": str(task.id), "lane": lane},
            )
            await self._record_failure(task, "Task lease expired before completion", None)
        return reclaimed

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, task: TaskQueue) -> None:
        with correlation_scope(task.correlation_id):
            await self._run(task)

    async def _run(self, task: TaskQueue) -> None:
        policy = policy_for(task.task_type, self.policies)
        handler = self.handlers.get(task.task_type)
        timer = Timer().start()

        if handler is None:
            await self._record_failure(task, f"Unknown task type: {task.task_type}", None)
            return

        try:
            result = await asyncio.wait_for(handler(self, task), timeout=policy.timeout_seconds)
        except LedgerClaimLost:
            await self._release_lost_claim(task)
            return
        except asyncio.TimeoutError:
            await self._record_failure(
                task, f"Task timed out after {policy.timeout_seconds}s", None,
            )
            return
        except Exception as e:
            await self._record_failure(task, str(e) or e.__class__.__name__, traceback.format_exc())
            return

        await self._record_success(task, result or {}, timer.stop())

    async def _record_success(self, task: TaskQueue, result: dict, elapsed_ms: float) -> None:
        now = self.clock()
        async with self.session_factory() as db:
            await db.execute(
                update(TaskQueue)
                .where(TaskQueue.id == task.id)
                .values(
                    status="completed",
                    completed_at=now,
                    lease_expires_at=None,
                    result_data=result,
                    error_message=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info(
            "Task completed: id=%s type=%s lane=%s in %.2fms",
            str(task.id)[:8], task.task_type, task.lane, elapsed_ms,
            extra={"task_id": str(task.id), "task_type": task.task_type, "lane": task.lane},
        )

    async def _release_lost_claim(self, task: TaskQueue) -> None:
        """Put the task back without spending an attempt."""
        now = self.clock()
        async with self.session_factory() as db:
            await db.execute(
                update(TaskQueue)
                .where(TaskQueue.id == task.id)
                .values(
                    status="pending",
                    attempts=TaskQueue.attempts - 1,
                    lease_expires_at=None,
                    scheduled_at=now + timedelta(seconds=LOST_CLAIM_RETRY_SECONDS),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        logger.info(
            "Ledger entry busy, task %s returned to queue", str(task.id)[:8],
            extra={"task_id": str(task.id), "lane": task.lane},
        )

    async def _record_failure(self, task: TaskQueue, error: str, error_traceback: Optional[str]) -> None:
        """Schedule a retry, or dead-letter the task when attempts are exhausted."""
        now = self.clock()
        policy = policy_for(task.task_type, self.policies)
        error = error[:MAX_ERROR_LENGTH]
        event_id = _webhook_event_id(task)

        async with self.session_factory() as db:
            row = await db.get(TaskQueue, task.id, populate_existing=True)
            attempts = row.attempts
            max_attempts = row.max_attempts if row.max_attempts is not None else policy.max_attempts
            exhausted = attempts >= max_attempts
            delay = policy.delay_for(attempts)
            retry_at = now + timedelta(seconds=delay)

            row.error_message = error
            row.lease_expires_at = None
            row.updated_at = now
            if exhausted:
                row.status = "dead"
                row.completed_at = now
            else:
                row.status = "pending"
                row.scheduled_at = retry_at

            event = await db.get(WebhookEvent, event_id, populate_existing=True) if event_id else None
            if event is not None:
                event.status = "failed"
                event.error_message = error
                event.retry_count = (event.retry_count or 0) + 1
                event.retry_after = None if exhausted else retry_at
                event.updated_at = now

            if exhausted:
                db.add(DeadLetter(
                    task_id=row.id,
                    task_type=row.task_type,
                    lane=row.lane,
                    webhook_event_id=event_id,
                    delivery_id=event.delivery_id if event is not None else None,
                    payload=row.payload or {},
                    error_message=error,
                    error_traceback=error_traceback,
                    attempts=attempts,
                    status="dead",
                    correlation_id=row.correlation_id,
                    created_at=now,
                ))
            await db.commit()

        log_extra = {"task_id": str(task.id), "task_type": task.task_type, "lane": task.lane, "attempt": attempts}
        if exhausted:
            logger.critical(
                "Task dead-lettered after %d attempts: id=%s type=%s error=%s",
                attempts, str(task.id)[:8], task.task_type, error,
                extra=log_extra,
            )
            await send_alert(
                AlertType.DEAD_LETTER_EXHAUSTED,
                f"{task.task_type} task {str(task.id)[:8]} exhausted {attempts} attempts: {error[:200]}",
                correlation_id=task.correlation_id,
                severity="critical",
                extra={"task_id": str(task.id), "lane": task.lane},
            )
        else:
            logger.warning(
                "Task retry %d/%d: id=%s type=%s backoff=%ss error=%s",
                attempts, max_attempts, str(task.id)[:8], task.task_type, delay, error,
                extra=log_extra,
            )


def _webhook_event_id(task: TaskQueue) -> Optional[uuid.UUID]:
    if task.task_type != TaskType.PROCESS_WEBHOOK:
        return None
    raw = (task.payload or {}).get("webhook_event_id")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Task handlers
# ---------------------------------------------------------------------------

async def _handle_process_webhook(pool: WorkerPool, task: TaskQueue) -> dict:
    """Claim the ledger row, run the category handler and mark the row completed."""
    from devpulse.services.event_processor import ProcessingContext, process_event

    event_id = _webhook_event_id(task)
    if event_id is None:
        raise ValueError("process_webhook task has no valid webhook_event_id")

    started = pool.clock()
    async with pool.session_factory() as db:
        claimed = await claim_ledger_entry(db, event_id, started)
        await db.commit()
        if not claimed:
            current = await db.get(WebhookEvent, event_id)
    if not claimed:
        if current is None:
            raise LookupError(f"Webhook event {event_id} not found")
        if current.status in ("completed", "skipped"):
            logger.info(
                "Delivery %s already %s, nothing to do", current.delivery_id, current.status,
                extra={"delivery_id": current.delivery_id},
            )
            return {"status": "already_processed", "event_status": current.status}
        if current.status == "processing":
            raise LedgerClaimLost(str(event_id))
        raise RuntimeError(
            f"Webhook event {current.delivery_id} is {current.status} and not due for retry"
        )

    timer = Timer().start()
    async with pool.session_factory() as db:
        event = await db.get(WebhookEvent, event_id)
        if event is None:
            raise LookupError(f"Webhook event {event_id} not found")

        ctx = ProcessingContext(
            db=db,
            event=event,
            now=started,
            stale_after_days=pool.settings.stale_after_days,
            analyze_files=bool(pool.settings.github_api_token),
        )
        try:
            result = await process_event(ctx)
        except Exception:
            await db.rollback()
            raise

        event.status = "completed"
        event.processed_at = pool.clock()
        event.processing_duration_ms = timer.stop()
        event.error_message = None
        event.retry_after = None
        await db.commit()

    await notify_enqueued(ctx.enqueued)
    return result


async def _handle_detect_flaky_tests(pool: WorkerPool, task: TaskQueue) -> dict:
    from devpulse.services.alerts import AlertManager
    from devpulse.services.flakiness import FlakinessAnalyzer, FlakinessConfig

    raw_id = (task.payload or {}).get("test_run_id")
    if not raw_id:
        raise ValueError("detect_flaky_tests task has no test_run_id")

    alert_manager = AlertManager(webhook_url=pool.settings.alert_webhook_url)
    analyzer = FlakinessAnalyzer(FlakinessConfig.from_settings(pool.settings), alert_manager)
    now = pool.clock()

    async with pool.session_factory() as db:
        analysis = await analyzer.analyze_run(db, uuid.UUID(str(raw_id)), now=now)
        await db.commit()

        notified = 0
        if analysis.alerts:
            notified = await alert_manager.notify_new_alerts(db, analysis.alerts, now=now)
            await db.commit()

    return {
        "status": "analyzed",
        "test_run_id": analysis.test_run_id,
        "failed_tests": analysis.analyzed_tests,
        "flaky_tests": len(analysis.findings),
        "alerts_created": sum(1 for a in analysis.alerts if a.created),
        "alerts_notified": notified,
    }


async def _handle_analyze_pr_files(pool: WorkerPool, task: TaskQueue) -> dict:
    from devpulse.services.file_changes import analyze_pull_request_files

    raw_id = (task.payload or {}).get("pull_request_id")
    if not raw_id:
        raise ValueError("analyze_pull_request_files task has no pull_request_id")

    async with pool.session_factory() as db:
        result = await analyze_pull_request_files(
            db,
            uuid.UUID(str(raw_id)),
            token=pool.settings.github_api_token,
            api_url=pool.settings.github_api_url,
            timeout=pool.settings.github_api_timeout_seconds,
            now=pool.clock(),
            stale_after_days=pool.settings.stale_after_days,
        )
        await db.commit()
    return result
