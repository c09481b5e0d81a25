"""
Task dispatch service - enqueue tasks onto a priority lane.

Tasks are written through the caller's session so the task row commits in the
same transaction as the data that produced it. After commit, callers push a
wake-up token to Redis so an idle executor on that lane picks it up at once.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.task_queue import TaskQueue
from devpulse.utils.logging import get_correlation_id
from devpulse.utils.redis_client import notify_lane
from devpulse.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class TaskType:
    """Task type constants."""
    PROCESS_WEBHOOK = "process_webhook"
    DETECT_FLAKY_TESTS = "detect_flaky_tests"
    ANALYZE_PR_FILES = "analyze_pull_request_files"


async def enqueue_task(
    db: AsyncSession,
    task_type: str,
    lane: str,
    payload: Optional[dict] = None,
    max_attempts: Optional[int] = None,
    delay_seconds: float = 0,
) -> TaskQueue:
    """
    Add a task row to the session and flush it.

    Args:
        task_type: a TaskType constant
        lane: high, default or low
        payload: JSON-serializable task data
        max_attempts: pins the attempt limit; None uses the pool's configured policy
        delay_seconds: delay before the task becomes eligible
    """
    task = TaskQueue(
        id=uuid.uuid4(),
        task_type=task_type,
        lane=str(getattr(lane, "value", lane)),
        payload=payload or {},
        status="pending",
        attempts=0,
        max_attempts=max_attempts,
        scheduled_at=utcnow() + timedelta(seconds=delay_seconds),
        correlation_id=get_correlation_id(),
    )
    db.add(task)
    await db.flush()

    logger.info(
        "Task enqueued: type=%s lane=%s delay=%ss id=%s",
        task_type, task.lane, delay_seconds, str(task.id)[:8],
        extra={"task_id": str(task.id), "task_type": task_type, "lane": task.lane},
    )
    return task


async def notify_enqueued(tasks: list[TaskQueue]) -> None:
    """Wake executors for tasks that were just committed. Best-effort."""
    for task in tasks:
        await notify_lane(task.lane, str(task.id))
