"""
Webhook endpoints - receive GitHub deliveries and queue them for processing.

Ingress does the minimum work needed to make a delivery durable:
1. Header check (event, delivery id, signature)
2. Signature validation over the raw body
3. Ledger insert keyed by delivery id (the idempotency gate)
4. Task insert on the event's lane, same transaction
5. Best-effort Redis wake-up after commit

All processing happens in the worker pool.
"""
import hmac
import json
import logging
import uuid

from fastapi import APIRouter, Request, Depends, HTTPException, Header
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from devpulse.config import Settings, get_settings
from devpulse.database import get_db
from devpulse.models.webhook_event import WebhookEvent
from devpulse.schemas.api_responses import (
    WebhookAcceptedResponse,
    WebhookDuplicateResponse,
    ReplayResponse,
)
from devpulse.services.replay import DeliveryNotFoundError, ReplayError, replay_delivery
from devpulse.services.routing import classify, lane_for
from devpulse.services.task_dispatch import TaskType, enqueue_task, notify_enqueued
from devpulse.utils.alerting import AlertType, send_alert
from devpulse.utils.logging import get_correlation_id
from devpulse.utils.metrics import Timer
from devpulse.utils.timestamps import utcnow
from devpulse.utils.webhook_signatures import verify_github_signature, compute_payload_hash

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"
SIGNATURE_HEADER = "X-Hub-Signature-256"

# Headers kept on the ledger row for audit
_STORED_HEADERS = (
    "x-github-event",
    "x-github-delivery",
    "x-github-hook-id",
    "x-github-hook-installation-target-id",
    "x-github-hook-installation-target-type",
    "user-agent",
    "content-type",
)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _audit_headers(request: Request) -> dict:
    return {k: request.headers[k] for k in _STORED_HEADERS if k in request.headers}


def _repository_external_id(payload: dict):
    repository = payload.get("repository")
    if isinstance(repository, dict) and repository.get("id") is not None:
        return str(repository["id"])
    return None


async def _find_existing_event_id(db: AsyncSession, delivery_id: str):
    result = await db.execute(
        select(WebhookEvent.id).where(WebhookEvent.delivery_id == delivery_id)
    )
    return result.scalar_one_or_none()


async def _storage_failed(event_type: str, delivery_id: str, error: Exception):
    logger.error(
        "Failed to store delivery %s: %s", delivery_id, str(error),
        extra={"delivery_id": delivery_id, "event_type": event_type},
    )
    await send_alert(
        AlertType.INGRESS_STORAGE_FAILED,
        f"Could not store {event_type} delivery {delivery_id}: {str(error)[:200]}",
    )
    raise HTTPException(status_code=500, detail="Failed to store webhook")


@router.post("/github", status_code=202)
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """GitHub webhook receiver. Returns 202 once the delivery is durable."""
    timer = Timer().start()

    event_type = request.headers.get(EVENT_HEADER)
    delivery_id = request.headers.get(DELIVERY_HEADER)
    signature = request.headers.get(SIGNATURE_HEADER)
    if not event_type or not delivery_id or not signature:
        raise HTTPException(status_code=400, detail="Missing required headers")

    body = await request.body()
    client_ip = _client_ip(request)

    if not verify_github_signature(settings.github_webhook_secret, signature, body):
        logger.error(
            "Invalid webhook signature: event=%s ip=%s delivery=%s",
            event_type, client_ip, delivery_id,
            extra={"event_type": event_type, "source_ip": client_ip, "delivery_id": delivery_id},
        )
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Rejected {event_type} delivery {delivery_id} from {client_ip}",
            severity="error",
        )
        raise HTTPException(status_code=403, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")

    action = payload.get("action") if isinstance(payload.get("action"), str) else None
    category = classify(event_type, action)
    lane = lane_for(category, action) if category is not None else None
    now = utcnow()

    event = WebhookEvent(
        id=uuid.uuid4(),
        delivery_id=delivery_id,
        provider="github",
        event_type=event_type,
        action=action,
        repository_external_id=_repository_external_id(payload),
        payload=payload,
        payload_hash=compute_payload_hash(body),
        signature=signature[:100],
        signature_verified=True,
        verified_at=now,
        lane=lane.value if lane is not None else None,
        status="pending" if category is not None else "skipped",
        processed_at=None if category is not None else now,
        source_ip=client_ip,
        user_agent=(request.headers.get("user-agent") or "")[:255] or None,
        headers=_audit_headers(request),
        correlation_id=get_correlation_id(),
        received_at=now,
    )

    tasks = []
    try:
        db.add(event)
        await db.flush()

        if category is not None:
            task = await enqueue_task(
                db,
                TaskType.PROCESS_WEBHOOK,
                lane,
                payload={"webhook_event_id": str(event.id), "delivery_id": delivery_id},
            )
            tasks.append(task)

        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        existing_id = await _find_existing_event_id(db, delivery_id)
        if existing_id is None:
            # Violated some other constraint; nothing was stored under this delivery
            await _storage_failed(event_type, delivery_id, e)
        logger.info(
            "Duplicate delivery %s ignored", delivery_id,
            extra={"delivery_id": delivery_id, "event_type": event_type},
        )
        return JSONResponse(
            status_code=200,
            content=WebhookDuplicateResponse(event_id=str(existing_id)).model_dump(),
        )
    except SQLAlchemyError as e:
        await db.rollback()
        await _storage_failed(event_type, delivery_id, e)

    await notify_enqueued(tasks)

    elapsed_ms = timer.stop()
    if elapsed_ms > settings.ingress_latency_target_ms:
        logger.warning(
            "Slow webhook ingress: %s %.2fms (target %dms)",
            delivery_id, elapsed_ms, settings.ingress_latency_target_ms,
            extra={"delivery_id": delivery_id, "event_type": event_type},
        )

    queued = bool(tasks)
    if queued:
        message = f"Queued {event_type}.{action or '-'} on {lane.value} lane"
    else:
        message = f"Event {event_type}.{action or '-'} recorded but not processed"
    logger.info(
        "Webhook accepted: %s.%s delivery=%s queued=%s in %.2fms",
        event_type, action, delivery_id, queued, elapsed_ms,
        extra={
            "delivery_id": delivery_id,
            "event_type": event_type,
            "action": action,
            "lane": lane.value if lane is not None else None,
            "source_ip": client_ip,
        },
    )
    return WebhookAcceptedResponse(
        message=message,
        event_id=str(event.id),
        delivery_id=delivery_id,
        lane=lane.value if lane is not None else None,
        queued=queued,
        response_time_ms=elapsed_ms,
    ).model_dump()


async def require_admin_token(
    x_admin_token: str = Header(default=""),
    settings: Settings = Depends(get_settings),
) -> None:
    """Admin endpoints are closed unless ADMIN_API_TOKEN is configured."""
    if not settings.admin_api_token:
        raise HTTPException(status_code=403, detail="Admin API disabled")
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode("utf-8"), settings.admin_api_token.encode("utf-8"),
    ):
        raise HTTPException(status_code=403, detail="Invalid admin token")


@router.post("/replay/{delivery_id}", response_model=ReplayResponse, dependencies=[Depends(require_admin_token)])
async def replay_webhook(
    delivery_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Re-queue a stored delivery (e.g. after it was dead-lettered)."""
    try:
        task = await replay_delivery(db, delivery_id)
    except DeliveryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ReplayError as e:
        raise HTTPException(status_code=409, detail=str(e))

    await db.commit()
    await notify_enqueued([task])
    return ReplayResponse(delivery_id=delivery_id, task_id=str(task.id), lane=task.lane)
