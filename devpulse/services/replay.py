"""
Manual replay of a stored delivery.

The ledger keeps the original payload, so a delivery that was dead-lettered
(or processed with a bug since fixed) can be pushed through the pipeline
again without GitHub re-sending it.
"""
import logging

from sqlalchemy import select, and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.models.dead_letter import DeadLetter
from devpulse.models.task_queue import TaskQueue
from devpulse.models.webhook_event import WebhookEvent
from devpulse.services.routing import Lane
from devpulse.services.task_dispatch import TaskType, enqueue_task
from devpulse.utils.timestamps import utcnow

logger = logging.getLogger(__name__)


class ReplayError(Exception):
    """The delivery cannot be replayed."""


class DeliveryNotFoundError(ReplayError):
    """No ledger row exists for the delivery id."""


async def replay_delivery(db: AsyncSession, delivery_id: str) -> TaskQueue:
    """
    Reset the ledger row to pending and enqueue a fresh process_webhook task.
    Related dead letters are marked replayed. The caller commits.
    """
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.delivery_id == delivery_id)
        .with_for_update()
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise DeliveryNotFoundError(f"Unknown delivery: {delivery_id}")
    if event.status == "processing":
        raise ReplayError(f"Delivery {delivery_id} is currently processing")
    if event.status == "skipped":
        raise ReplayError(f"Delivery {delivery_id} has no handler ({event.event_type})")

    now = utcnow()
    previous_status = event.status
    event.status = "pending"
    event.error_message = None
    event.retry_after = None
    event.processing_started_at = None
    event.updated_at = now

    task = await enqueue_task(
        db,
        TaskType.PROCESS_WEBHOOK,
        event.lane or Lane.DEFAULT.value,
        payload={"webhook_event_id": str(event.id), "delivery_id": event.delivery_id},
    )

    await db.execute(
        update(DeadLetter)
        .where(and_(DeadLetter.webhook_event_id == event.id, DeadLetter.status == "dead"))
        .values(status="replayed", replayed_at=now)
        .execution_options(synchronize_session=False)
    )

    logger.info(
        "Delivery %s replayed (was %s), task %s",
        delivery_id, previous_status, str(task.id)[:8],
        extra={"delivery_id": delivery_id, "task_id": str(task.id), "lane": task.lane},
    )
    return task
