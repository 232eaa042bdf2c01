"""
Matching Celery tasks.

``run_maintenance`` is scheduled by beat every MATCHING_CRON_INTERVAL_SECONDS.
``enqueue_intents`` lets other services (payments, profile edits) queue
intents for matching without importing the engine.
"""

import asyncio
import logging
import uuid

from app.tasks.celery_app import celery_app
from app.matching_engine.enqueue import enqueue_service
from app.matching_engine.maintenance import maintenance_scheduler

logger = logging.getLogger(__name__)


async def _release_connections() -> None:
    """Each task runs on a fresh event loop, so pooled connections can't be reused."""
    from app.database import engine
    from app.redis_client import redis

    await engine.dispose()
    await redis.connection_pool.disconnect()


def _run(coro_factory):
    """
    Run an async job on a new event loop.

    Celery tasks are synchronous, so each invocation owns its loop.
    """
    async def _job():
        try:
            return await coro_factory()
        finally:
            await _release_connections()

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(_job())
    finally:
        loop.close()


@celery_app.task(name="app.tasks.matching_tasks.run_maintenance")
def run_maintenance():
    """Execute one maintenance run (stale locks, sweep, cleanup)."""
    logger.info("Starting scheduled matching maintenance")
    try:
        report = _run(lambda: maintenance_scheduler.run_maintenance(trigger="cron"))
    except Exception:
        logger.exception("Matching maintenance failed")
        raise

    if report is None or report.get("skipped"):
        logger.info("Matching maintenance skipped, a run is already in progress")
        return {"skipped": True}
    return report


@celery_app.task(name="app.tasks.matching_tasks.enqueue_intents")
def enqueue_intents(intent_ids: list[str]):
    """Queue the given intents for matching."""
    try:
        ids = [uuid.UUID(str(i)) for i in intent_ids]
        result = _run(lambda: enqueue_service.enqueue_many(ids))
    except Exception:
        logger.exception("Enqueue of %d intent(s) failed", len(intent_ids))
        raise
    logger.info(
        "Enqueued %d/%d intent(s) (%d skipped, %d errors)",
        result["enqueued"], len(intent_ids), result["skipped"], result["errors"],
    )
    return result
