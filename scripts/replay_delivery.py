"""
Replay one or more stored webhook deliveries.

Resets each ledger row to pending, queues a fresh process_webhook task on the
delivery's lane and marks its dead letters as replayed. Running workers pick
the task up on their next poll.

Usage:
    python scripts/replay_delivery.py 72d3162e-cc78-11e3-81ab-4c9367dc0958
    python scripts/replay_delivery.py --dead-letters   # every dead-lettered delivery
"""
import argparse
import asyncio
import logging
import sys

from sqlalchemy import select

from devpulse.database import async_session_factory, dispose_engine
from devpulse.models.dead_letter import DeadLetter
from devpulse.services.replay import ReplayError, replay_delivery
from devpulse.services.task_dispatch import notify_enqueued
from devpulse.utils.redis_client import close_redis

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


async def _dead_lettered_deliveries() -> list[str]:
    async with async_session_factory() as db:
        result = await db.execute(
            select(DeadLetter.delivery_id)
            .where(DeadLetter.status == "dead", DeadLetter.delivery_id.is_not(None))
            .distinct()
        )
        return list(result.scalars().all())


async def replay(delivery_ids: list[str]) -> int:
    failures = 0
    for delivery_id in delivery_ids:
        async with async_session_factory() as db:
            try:
                task = await replay_delivery(db, delivery_id)
                await db.commit()
            except ReplayError as e:
                await db.rollback()
                logger.error("  ! %s", str(e))
                failures += 1
                continue
        await notify_enqueued([task])
        logger.info("  + %s -> task %s (%s lane)", delivery_id, task.id, task.lane)
    return failures


async def main(args) -> int:
    delivery_ids = list(args.delivery_ids)
    if args.dead_letters:
        delivery_ids.extend(await _dead_lettered_deliveries())

    if not delivery_ids:
        logger.info("Nothing to replay")
        return 0

    logger.info("Replaying %d deliveries", len(delivery_ids))
    try:
        failures = await replay(delivery_ids)
    finally:
        await dispose_engine()
        await close_redis()

    logger.info("Done: %d replayed, %d failed", len(delivery_ids) - failures, failures)
    return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay stored webhook deliveries")
    parser.add_argument("delivery_ids", nargs="*", help="X-GitHub-Delivery ids to replay")
    parser.add_argument(
        "--dead-letters", action="store_true",
        help="Replay every delivery that currently has a dead letter",
    )
    sys.exit(asyncio.run(main(parser.parse_args())))
