"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + per-lane queue depth)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, text
from devpulse.database import get_db
from devpulse.models.task_queue import TaskQueue
from devpulse.services.routing import Lane

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity and reports
    how many tasks are waiting on each lane.
    Redis is only a wake-up channel, so it degrades rather than fails readiness.
    """
    checks = {"database": False, "redis": False}
    queue_depth: dict[str, int] = {}

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
        queue_depth = await _lane_depths(db)
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    # Check Redis
    try:
        from devpulse.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    if all(checks.values()):
        status = "ready"
    elif checks["database"]:
        status = "degraded"
    else:
        status = "unavailable"

    return {
        "status": status,
        "checks": checks,
        "queue_depth": queue_depth,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _lane_depths(db: AsyncSession) -> dict[str, int]:
    """Pending task count per lane; lanes with no tasks report 0."""
    result = await db.execute(
        select(TaskQueue.lane, func.count(TaskQueue.id))
        .where(TaskQueue.status == "pending")
        .group_by(TaskQueue.lane)
    )
    depths = {lane.value: 0 for lane in Lane}
    for lane, count in result.all():
        depths[lane] = count
    return depths
