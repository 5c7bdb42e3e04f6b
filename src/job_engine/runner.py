"""
Execution runner: runs one dispatched job to a terminal state.

Retries are internal to a job: the row stays PROCESSING while the runner
sleeps and tries again, counting retries in place. Only the terminal
outcome produces an ExecutionRecord. A job swept back to PENDING while its
runner slept or ran is left to whoever dispatches it next.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional
import logging

from .alerts import AlertManager
from .errors import DuplicateActiveJob, InvalidJobTransition, ScheduleNotFound
from .executors import ExecutionResult, ExecutorRegistry, JobContext
from .models import ChainOn, ExecutionRecord, ExecutionStatus, Job, JobType, utcnow
from .queue import JobQueue, RunOutcome
from .registry import ScheduleRegistry
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class ExecutionRunner:

    def __init__(
        self,
        queue: JobQueue,
        registry: ScheduleRegistry,
        executors: ExecutorRegistry,
        retry_policy: RetryPolicy,
        alert_manager: Optional[AlertManager] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.queue = queue
        self.registry = registry
        self.executors = executors
        self.retry_policy = retry_policy
        self.alert_manager = alert_manager
        self.sleep = sleep

    async def run_job(self, job: Job) -> Optional[ExecutionRecord]:
        """
        Execute a PROCESSING job until it completes or fails for good.

        Returns the ExecutionRecord written for it, or None when another
        signal already finalized the job or a stale sweep reset it.
        """
        policy = RetryPolicy.from_config(job.retry_policy, self.retry_policy)
        started_at = job.started_at or utcnow()
        clock_start = time.monotonic()
        attempts_made = 0

        async def report_progress(progress: int):
            await self.queue.report_progress(job.id, progress)

        while True:
            attempts_made += 1
            context = JobContext(
                job_id=job.id,
                job_type=job.type,
                resource_id=job.resource_id,
                space_id=job.space_id,
                schedule_id=job.schedule_id,
                payload=job.payload or {},
                attempt=attempts_made,
                report_progress=report_progress,
                generation=job.attempt or 1,
            )
            try:
                executor = self.executors.resolve(job.type)
                result = await executor(context)
            except Exception as e:
                if policy.should_retry(e, attempts_made):
                    delay = policy.next_delay(attempts_made)
                    logger.warning(
                        f"Job {job.id} ({job.type} resource={job.resource_id}) attempt {attempts_made} failed "
                        f"with transient error: {e!r}; retrying in {delay:.2f}s"
                    )
                    await self.sleep(delay)
                    if not await self.queue.record_attempt(job.id):
                        logger.warning(f"Job {job.id} is no longer processing; abandoning its retries")
                        return None
                    continue

                logger.error(
                    f"Job {job.id} ({job.type} resource={job.resource_id}) failed permanently "
                    f"after {attempts_made} attempt(s): {e!r}"
                )
                record = await self._finalize(job, self.queue.fail, RunOutcome(
                    started_at=started_at,
                    duration_ms=_elapsed_ms(clock_start),
                    attempts=attempts_made,
                    error_message=_describe(e),
                ))
                break
            else:
                record = await self._finalize(job, self.queue.complete, RunOutcome(
                    started_at=started_at,
                    duration_ms=_elapsed_ms(clock_start),
                    attempts=attempts_made,
                    result=self._coerce_result(job, result),
                ))
                if record is not None:
                    logger.info(f"Job {job.id} ({job.type} resource={job.resource_id}) completed in {record.duration_ms}ms")
                break

        if record is None:
            return None

        if job.schedule_id is not None:
            # Failures advance the schedule too, so a broken source waits for its next slot.
            try:
                await self.registry.record_run(job.schedule_id, started_at)
            except ScheduleNotFound:
                logger.warning(f"Schedule {job.schedule_id} of job {job.id} no longer exists")
            await self._trigger_dependents(job.schedule_id, record)

        if self.alert_manager is not None:
            await self.alert_manager.on_execution_record(record)
        return record

    async def _finalize(self, job: Job, finish, outcome: RunOutcome) -> Optional[ExecutionRecord]:
        try:
            return await finish(job.id, outcome)
        except InvalidJobTransition as e:
            logger.warning(f"Job {job.id} was reset while running ({e}); leaving it to its next dispatch")
            return None

    @staticmethod
    def _coerce_result(job: Job, result) -> ExecutionResult:
        if isinstance(result, ExecutionResult):
            return result
        if isinstance(result, dict):
            return ExecutionResult.from_dict(result)
        if result is not None:
            logger.warning(
                f"Executor for {job.type} returned {type(result).__name__}, not ExecutionResult; recording zero counts"
            )
        return ExecutionResult()

    async def _trigger_dependents(self, schedule_id: int, record: ExecutionRecord) -> None:
        """Enqueue schedules chained after ``schedule_id`` whose condition matches."""
        succeeded = record.status == ExecutionStatus.SUCCESS.value
        for dependent in await self.registry.list_dependents(schedule_id):
            wanted = dependent.chain_on
            if wanted == ChainOn.SUCCESS.value and not succeeded:
                continue
            if wanted == ChainOn.FAILURE.value and succeeded:
                continue
            try:
                job_id = await self.queue.enqueue(
                    JobType.for_domain(dependent.domain).value,
                    dependent.resource_id,
                    space_id=dependent.space_id,
                    schedule_id=dependent.id,
                    payload=dependent.payload,
                    retry_policy=dependent.retry_policy,
                )
                logger.info(f"Schedule {dependent.id} chained after {schedule_id}: enqueued job {job_id}")
            except DuplicateActiveJob as e:
                logger.info(f"Chained schedule {dependent.id} already active: {e}")


def _elapsed_ms(clock_start: float) -> int:
    return int((time.monotonic() - clock_start) * 1000)


def _describe(error: BaseException) -> str:
    message = str(error) or error.__class__.__name__
    return f"{error.__class__.__name__}: {message}"
