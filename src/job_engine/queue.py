"""
Durable job queue with a guarded state machine.

    PENDING -> PROCESSING -> COMPLETED | FAILED

Every transition is a single conditional UPDATE that names the expected
previous status, and the caller checks that exactly one row changed. Two
workers racing for the same job can therefore never both win.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import DuplicateActiveJob, InvalidJobTransition, JobNotFound, RequeueLimitReached
from .executors import ExecutionResult
from .models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ExecutionRecord,
    ExecutionStatus,
    Job,
    JobStatus,
    JobType,
    utcnow,
)
from .settings import settings

logger = logging.getLogger(__name__)

# Candidates fetched per dequeue round; losing a race falls through to the next one.
_DEQUEUE_CANDIDATES = 5


@dataclass
class RunOutcome:
    """What the runner observed for a job, written into its ExecutionRecord."""

    started_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    attempts: int = 1
    result: Optional[ExecutionResult] = None
    error_message: Optional[str] = None


class JobQueue:
    """Enqueue/dequeue/complete/fail over the ``jobs`` table."""

    def __init__(self, session_factory: async_sessionmaker, max_requeue_attempts: Optional[int] = None):
        self.session_factory = session_factory
        self.max_requeue_attempts = max_requeue_attempts or settings.max_requeue_attempts

    async def enqueue(
        self,
        job_type: str,
        resource_id: str,
        *,
        space_id: Optional[str] = None,
        schedule_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
        requeued_from_id: Optional[int] = None,
    ) -> int:
        """Insert a PENDING job; raises DuplicateActiveJob if one is already active."""
        job_type = JobType(job_type).value
        async with self.session_factory() as session:
            existing = await session.execute(
                select(Job.id).where(
                    Job.type == job_type,
                    Job.resource_id == resource_id,
                    Job.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            existing_id = existing.scalar_one_or_none()
            if existing_id is not None:
                raise DuplicateActiveJob(job_type, resource_id, existing_id)

            now = utcnow()
            job = Job(
                type=job_type,
                resource_id=resource_id,
                space_id=space_id,
                schedule_id=schedule_id,
                status=JobStatus.PENDING.value,
                progress=0,
                attempt=attempt,
                payload=payload or {},
                retry_policy=retry_policy,
                requeued_from_id=requeued_from_id,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                # Lost the race to a concurrent enqueue; the partial unique index caught it.
                await session.rollback()
                raise DuplicateActiveJob(job_type, resource_id)

            logger.info(f"Enqueued job {job.id} ({job_type} resource={resource_id} schedule={schedule_id})")
            return job.id

    async def dequeue_next(self) -> Optional[Job]:
        """Claim the oldest PENDING job, or return None when there is none."""
        async with self.session_factory() as session:
            while True:
                result = await session.execute(
                    select(Job.id)
                    .where(Job.status == JobStatus.PENDING.value)
                    .order_by(Job.created_at, Job.id)
                    .limit(_DEQUEUE_CANDIDATES)
                )
                candidates = result.scalars().all()
                if not candidates:
                    return None

                for job_id in candidates:
                    now = utcnow()
                    claimed = await session.execute(
                        update(Job)
                        .where(Job.id == job_id, Job.status == JobStatus.PENDING.value)
                        .values(status=JobStatus.PROCESSING.value, started_at=now, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount == 1:
                        await session.commit()
                        job = await session.get(Job, job_id)
                        logger.info(f"Dispatched job {job_id} ({job.type} resource={job.resource_id})")
                        return job
                # Every candidate was taken by someone else; look again.
                await session.commit()

    async def complete(self, job_id: int, outcome: Optional[RunOutcome] = None) -> Optional[ExecutionRecord]:
        """PROCESSING -> COMPLETED. Returns the written record, or None if already terminal."""
        return await self._finish(job_id, JobStatus.COMPLETED, outcome or RunOutcome())

    async def fail(self, job_id: int, outcome: Optional[RunOutcome] = None) -> Optional[ExecutionRecord]:
        """PROCESSING -> FAILED. Returns the written record, or None if already terminal."""
        return await self._finish(job_id, JobStatus.FAILED, outcome or RunOutcome())

    async def _finish(self, job_id: int, status: JobStatus, outcome: RunOutcome) -> Optional[ExecutionRecord]:
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)

            now = utcnow()
            values = {"status": status.value, "updated_at": now, "completed_at": now}
            if status == JobStatus.COMPLETED:
                values["progress"] = 100
                values["error"] = None
            else:
                values["error"] = outcome.error_message
            transitioned = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if transitioned.rowcount != 1:
                await session.rollback()
                await session.refresh(job)
                if job.status in TERMINAL_JOB_STATUSES:
                    logger.info(f"Job {job_id} already {job.status}; ignoring duplicate {status.value} signal")
                    return None
                raise InvalidJobTransition(job_id, job.status, status.value)

            started_at = outcome.started_at or job.started_at or now
            duration_ms = outcome.duration_ms
            if duration_ms is None:
                duration_ms = int((now - started_at).total_seconds() * 1000)
            result = outcome.result or ExecutionResult()

            record = ExecutionRecord(
                job_id=job_id,
                schedule_id=job.schedule_id,
                space_id=job.space_id,
                status=(ExecutionStatus.SUCCESS if status == JobStatus.COMPLETED else ExecutionStatus.FAILED).value,
                started_at=started_at,
                completed_at=now,
                duration_ms=max(duration_ms, 0),
                attempts=outcome.attempts,
                records_fetched=result.records_fetched,
                records_processed=result.records_processed,
                records_inserted=result.records_inserted,
                records_updated=result.records_updated,
                records_failed=result.records_failed,
                error_message=outcome.error_message,
            )
            session.add(record)
            await session.commit()
            return record

    async def record_attempt(self, job_id: int) -> bool:
        """
        Count one in-place retry of a PROCESSING job.

        Returns False when the job is no longer PROCESSING, e.g. a stale sweep
        handed it back to the queue while its runner slept.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
                .values(retries=Job.retries + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def report_progress(self, job_id: int, progress: int) -> bool:
        progress = max(0, min(100, int(progress)))
        async with self.session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING.value)
                .values(progress=progress, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def requeue_failed(self, job_id: int) -> int:
        """
        Re-enqueue a FAILED job as a new row one generation up.

        The ceiling applies to ``attempt`` (requeue generations) only; the
        in-place retries a job burned before failing do not count against it.
        """
        job = await self.get(job_id)
        if job.status != JobStatus.FAILED.value:
            raise InvalidJobTransition(job_id, job.status, JobStatus.PENDING.value)
        if job.attempt >= self.max_requeue_attempts:
            raise RequeueLimitReached(job_id, job.attempt, self.max_requeue_attempts)
        return await self.enqueue(
            job.type,
            job.resource_id,
            space_id=job.space_id,
            schedule_id=job.schedule_id,
            payload=job.payload,
            retry_policy=job.retry_policy,
            attempt=job.attempt + 1,
            requeued_from_id=job.id,
        )

    async def reset_stale_jobs(self, timeout_seconds: Optional[int] = None) -> int:
        """Move PROCESSING jobs untouched for longer than the timeout back to PENDING."""
        timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.job_timeout
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        async with self.session_factory() as session:
            result = await session.execute(
                update(Job)
                .where(Job.status == JobStatus.PROCESSING.value, Job.updated_at < cutoff)
                .values(status=JobStatus.PENDING.value, started_at=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        count = result.rowcount
        if count > 0:
            logger.warning(f"Reset {count} stale processing jobs older than {timeout_seconds}s")
        return count

    async def get(self, job_id: int) -> Job:
        async with self.session_factory() as session:
            job = await session.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job

    async def list_jobs(
        self,
        page: int = 1,
        size: int = 10,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        space_id: Optional[str] = None,
        schedule_id: Optional[int] = None,
    ) -> Tuple[List[Job], int]:
        """List jobs with pagination and filtering, newest first."""
        query = select(Job)
        count_query = select(func.count(Job.id))
        filters = []
        if status:
            filters.append(Job.status == JobStatus(status).value)
        if job_type:
            filters.append(Job.type == JobType(job_type).value)
        if space_id:
            filters.append(Job.space_id == space_id)
        if schedule_id is not None:
            filters.append(Job.schedule_id == schedule_id)
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        offset = (page - 1) * size
        query = query.order_by(Job.created_at.desc(), Job.id.desc()).offset(offset).limit(size)

        async with self.session_factory() as session:
            jobs = (await session.execute(query)).scalars().all()
            total = (await session.execute(count_query)).scalar()
        return list(jobs), total

    async def process_pending_jobs(
        self,
        limit: int,
        handler: Callable[[Job], Awaitable[Any]],
        concurrency: int = 1,
    ) -> int:
        """
        Drain up to ``limit`` PENDING jobs through ``handler``.

        Runs ``concurrency`` workers that each dequeue then handle one job at
        a time. Returns as soon as the queue is empty; never waits for work.
        """
        if limit <= 0:
            return 0
        claimed = 0

        async def worker() -> int:
            nonlocal claimed
            handled = 0
            while claimed < limit:
                # Reserve a slot before awaiting so workers never overshoot the limit.
                claimed += 1
                job = await self.dequeue_next()
                if job is None:
                    claimed -= 1
                    break
                await handler(job)
                handled += 1
            return handled

        workers = max(1, min(concurrency, limit))
        tasks = [asyncio.ensure_future(worker()) for _ in range(workers)]
        try:
            counts = await asyncio.gather(*tasks)
        except BaseException:
            # One worker failed; stop the rest before propagating.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        processed = sum(counts)
        if processed:
            logger.info(f"Processed {processed} jobs (limit={limit}, concurrency={workers})")
        return processed
