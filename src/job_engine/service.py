"""
Engine facade following the Service Layer pattern.

``JobEngine`` wires the registry, resolver, queue, runner and alert manager
around one session factory and exposes the operations the HTTP layer and
the Celery tasks call.
"""

import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
import logging

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from .alerts import AlertManager
from .errors import DuplicateActiveJob
from .executors import ExecutorRegistry, build_default_registry
from .models import (
    Alert,
    ExecutionRecord,
    ExecutionStatus,
    JobType,
    ScheduleDefinition,
    TransferRequest,
    TransferStatus,
    utcnow,
)
from .notifications import build_default_notifier
from .queue import JobQueue
from .registry import ScheduleRegistry
from .resolver import DueItem, DueTimeResolver
from .retry import RetryPolicy
from .runner import ExecutionRunner
from .settings import settings

logger = logging.getLogger(__name__)


class JobEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        executors: Optional[ExecutorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        alert_manager: Optional[AlertManager] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        concurrency: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.registry = ScheduleRegistry(session_factory)
        self.resolver = DueTimeResolver(self.registry)
        self.queue = JobQueue(session_factory)
        self.alerts = alert_manager or AlertManager(session_factory, notifier=build_default_notifier())
        self.concurrency = concurrency or settings.worker_concurrency

        runner_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.runner = ExecutionRunner(
            queue=self.queue,
            registry=self.registry,
            executors=executors if executors is not None else build_default_registry(),
            retry_policy=retry_policy or RetryPolicy.from_settings(rng=rng),
            alert_manager=self.alerts,
            **runner_kwargs,
        )

    async def enqueue_due(self, items: List[DueItem]) -> Dict[str, int]:
        """Enqueue due items in order; already-active resources are skipped."""
        enqueued = skipped = 0
        for item in items:
            try:
                await self.queue.enqueue(
                    item.job_type,
                    item.resource_id,
                    space_id=item.space_id,
                    schedule_id=item.schedule_id,
                    payload=item.payload,
                    retry_policy=item.retry_policy,
                )
                enqueued += 1
            except DuplicateActiveJob as e:
                # Previous tick's job is still in flight; nothing to do.
                logger.info(f"Skipping due schedule {item.schedule_id}: {e}")
                skipped += 1
        return {"enqueued": enqueued, "skipped": skipped}

    async def process_pending_jobs(self, limit: Optional[int] = None) -> int:
        limit = limit if limit is not None else settings.queue_batch_size
        return await self.queue.process_pending_jobs(limit, self.runner.run_job, concurrency=self.concurrency)

    async def cron_tick(self, limit: Optional[int] = None, space_id: Optional[str] = None) -> Dict[str, Any]:
        """Resolve due schedules, enqueue them, then drain the queue."""
        items = await self.resolver.resolve_due(space_id=space_id)
        counts = await self.enqueue_due(items)
        processed = await self.process_pending_jobs(limit)
        logger.info(
            f"Cron tick: {len(items)} due, {counts['enqueued']} enqueued, "
            f"{counts['skipped']} skipped, {processed} processed"
        )
        return {"processed": processed, **counts, "timestamp": utcnow()}

    async def run_all_due(self, space_id: Optional[str] = None) -> Dict[str, int]:
        """Manual "run all now": enqueue everything due without draining."""
        return await self.enqueue_due(await self.resolver.resolve_due(space_id=space_id))

    async def trigger_schedule(self, schedule_id: int) -> int:
        """Enqueue a job for a schedule right now, regardless of its due time."""
        schedule = await self.registry.get(schedule_id)
        return await self.queue.enqueue(
            JobType.for_domain(schedule.domain).value,
            schedule.resource_id,
            space_id=schedule.space_id,
            schedule_id=schedule.id,
            payload=schedule.payload,
            retry_policy=schedule.retry_policy,
        )

    async def enqueue_transfer_requests(self, batch_size: Optional[int] = None) -> int:
        """Move a bounded batch of pending import/export requests onto the job queue."""
        batch_size = batch_size or settings.queue_batch_size
        async with self.session_factory() as session:
            result = await session.execute(
                select(TransferRequest)
                .where(TransferRequest.status == TransferStatus.PENDING.value)
                .order_by(TransferRequest.created_at, TransferRequest.id)
                .limit(batch_size)
            )
            requests = result.scalars().all()

        enqueued = 0
        for request in requests:
            job_type = JobType.IMPORT if request.direction == "import" else JobType.EXPORT
            try:
                await self.queue.enqueue(
                    job_type.value,
                    str(request.id),
                    space_id=request.space_id,
                    payload=request.payload,
                )
                enqueued += 1
            except DuplicateActiveJob as e:
                logger.info(f"Transfer request {request.id} already queued: {e}")
            await self._mark_transfer_queued(request.id)
        return enqueued

    async def _mark_transfer_queued(self, request_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(TransferRequest)
                .where(TransferRequest.id == request_id, TransferRequest.status == TransferStatus.PENDING.value)
                .values(status=TransferStatus.QUEUED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def process_transfer_requests(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        enqueued = await self.enqueue_transfer_requests(batch_size)
        processed = await self.process_pending_jobs(batch_size)
        return {"processed": processed, "enqueued": enqueued, "timestamp": utcnow()}

    async def list_executions(
        self,
        schedule_id: Optional[int] = None,
        space_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[ExecutionRecord]:
        query = select(ExecutionRecord)
        if schedule_id is not None:
            query = query.where(ExecutionRecord.schedule_id == schedule_id)
        if space_id:
            query = query.where(ExecutionRecord.space_id == space_id)
        if status:
            query = query.where(ExecutionRecord.status == ExecutionStatus(status).value)
        query = query.order_by(ExecutionRecord.completed_at.desc(), ExecutionRecord.id.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def stats(self, space_id: Optional[str] = None, since: Optional[datetime] = None) -> Dict[str, Any]:
        """Monitoring summary: schedule counts, recent run outcomes, open alerts."""
        since = since or utcnow() - timedelta(days=1)
        live = ScheduleDefinition.deleted_at.is_(None)
        schedule_filter = [live] + ([ScheduleDefinition.space_id == space_id] if space_id else [])
        execution_filter = [ExecutionRecord.completed_at >= since] + (
            [ExecutionRecord.space_id == space_id] if space_id else []
        )
        alert_filter = [Alert.acknowledged.is_(False)] + ([Alert.space_id == space_id] if space_id else [])

        async with self.session_factory() as session:
            total = (await session.execute(
                select(func.count(ScheduleDefinition.id)).where(*schedule_filter)
            )).scalar()
            enabled = (await session.execute(
                select(func.count(ScheduleDefinition.id)).where(*schedule_filter, ScheduleDefinition.enabled.is_(True))
            )).scalar()
            rows = (await session.execute(
                select(ExecutionRecord.status, func.count(ExecutionRecord.id), func.avg(ExecutionRecord.duration_ms))
                .where(*execution_filter)
                .group_by(ExecutionRecord.status)
            )).all()
            open_alerts = (await session.execute(select(func.count(Alert.id)).where(*alert_filter))).scalar()

        by_status = {status: (count, avg) for status, count, avg in rows}
        successes = by_status.get(ExecutionStatus.SUCCESS.value, (0, None))[0]
        failures = by_status.get(ExecutionStatus.FAILED.value, (0, None))[0]
        executions = successes + failures
        weighted = sum(count * (avg or 0) for count, avg in by_status.values())
        return {
            "total_schedules": total,
            "enabled_schedules": enabled,
            "executions_24h": executions,
            "successful_24h": successes,
            "failed_24h": failures,
            "success_rate": round(successes / executions * 100, 1) if executions else None,
            "avg_duration_ms": int(weighted / executions) if executions else None,
            "unacknowledged_alerts": open_alerts,
        }
