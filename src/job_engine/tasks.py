"""
Celery tasks driving the engine.

Each task runs one engine operation to completion in a fresh event loop,
with its own unpooled database engine so no connection outlives the loop
that opened it.
"""

import asyncio
import logging
from typing import Any, Dict

from .celery_app import celery_app
from .db import create_session_factory
from .service import JobEngine
from .settings import settings

logger = logging.getLogger(__name__)


async def _run_cron_tick() -> Dict[str, Any]:
    session_factory = create_session_factory(settings.database_url)
    try:
        engine = JobEngine(session_factory)
        return await engine.cron_tick()
    finally:
        await session_factory.kw["bind"].dispose()


async def _run_sweep(timeout_seconds: int) -> int:
    session_factory = create_session_factory(settings.database_url)
    try:
        engine = JobEngine(session_factory)
        return await engine.queue.reset_stale_jobs(timeout_seconds)
    finally:
        await session_factory.kw["bind"].dispose()


@celery_app.task(bind=True)
def poll_due_jobs(self) -> Dict[str, Any]:
    """
    Celery Beat task: the periodic cron tick.

    Resolves due schedules, enqueues them and drains the job queue.
    """
    logger.info("Polling for due jobs...")
    try:
        result = asyncio.run(_run_cron_tick())
    except Exception as e:
        logger.error(f"Error in poll_due_jobs: {e}", exc_info=True)
        raise
    logger.info(f"Cron tick processed {result['processed']} jobs")
    return {**result, "timestamp": result["timestamp"].isoformat()}


@celery_app.task(bind=True)
def sweep_stale_jobs(self, timeout_seconds: int = None) -> int:
    """Celery Beat task: return stuck PROCESSING jobs to the queue."""
    timeout_seconds = timeout_seconds or settings.job_timeout
    return asyncio.run(_run_sweep(timeout_seconds))
