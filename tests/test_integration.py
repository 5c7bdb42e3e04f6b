"""
Integration tests for the job engine.

Each test drives complete cron ticks: due-time resolution, enqueueing,
dispatch, execution with retries, schedule bookkeeping and alerting.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from conftest import ScriptedExecutor
from job_engine.errors import ExecutorError
from job_engine.executors import ExecutionResult
from job_engine.models import JobStatus, ScheduleDefinition, utcnow


def unavailable():
    return ExecutorError("service unavailable", status_code=503)


async def make_due(session_factory, schedule_id):
    """Pretend the schedule's interval has elapsed."""
    async with session_factory() as session:
        await session.execute(
            update(ScheduleDefinition)
            .where(ScheduleDefinition.id == schedule_id)
            .values(next_run_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()


class TestScheduleLifecycle:
    """Test class for the complete scheduled-run lifecycle."""

    @pytest.mark.asyncio
    async def test_failing_source_alerts_on_third_run(self, engine, executors, sleeper, session_factory, make_schedule):
        """A source that keeps answering 503 is retried, failed and finally alerted on."""
        executor = ScriptedExecutor(*[unavailable()] * 12)
        executors.register("data_sync", executor)
        schedule = await make_schedule(recurrence_rule="60")

        # Never-run interval schedule is due right away.
        assert [item.schedule_id for item in await engine.resolver.resolve_due()] == [schedule.id]

        first = await engine.cron_tick()
        assert first["enqueued"] == 1
        assert first["processed"] == 1
        assert sleeper.delays == [1.0, 2.0, 4.0]
        assert len(executor.calls) == 4

        records = await engine.list_executions(schedule_id=schedule.id)
        assert [r.status for r in records] == ["failed"]
        assert await engine.alerts.list_alerts() == []

        # Not due again until its interval elapses.
        assert (await engine.cron_tick())["processed"] == 0

        await make_due(session_factory, schedule.id)
        await engine.cron_tick()
        assert await engine.alerts.list_alerts() == []

        await make_due(session_factory, schedule.id)
        await engine.cron_tick()
        alerts = await engine.alerts.list_alerts()
        assert len(alerts) == 1
        assert alerts[0].alert_type == "repeated_failure"
        assert alerts[0].schedule_id == schedule.id

        jobs, total = await engine.queue.list_jobs(schedule_id=schedule.id)
        assert total == 3
        assert {job.status for job in jobs} == {JobStatus.FAILED.value}

    @pytest.mark.asyncio
    async def test_in_flight_resource_is_skipped(self, engine, executors, make_schedule):
        """A due schedule whose previous job is still queued is not enqueued twice."""
        executors.register("workflow", ScriptedExecutor(ExecutionResult()))
        schedule = await make_schedule(domain="workflow", resource_id="wf-1")
        await engine.queue.enqueue("workflow", "wf-1", space_id="space-1")

        result = await engine.cron_tick()

        assert result["enqueued"] == 0
        assert result["skipped"] == 1
        assert result["processed"] == 1
        # The schedule did not run, so it is still due.
        assert [item.schedule_id for item in await engine.resolver.resolve_due()] == [schedule.id]

    @pytest.mark.asyncio
    async def test_mixed_domains_in_one_tick(self, engine, executors, make_schedule):
        for job_type in ("data_sync", "workflow", "notebook"):
            executors.register(job_type, ScriptedExecutor(ExecutionResult(records_processed=1)))
        await make_schedule(domain="data_sync", resource_id="model-1")
        await make_schedule(domain="workflow", resource_id="wf-1")
        await make_schedule(domain="notebook", resource_id="nb-1")

        result = await engine.cron_tick()

        assert result["enqueued"] == 3
        assert result["processed"] == 3
        records = await engine.list_executions(status="success")
        assert len(records) == 3

        stats = await engine.stats()
        assert stats["executions_24h"] == 3
        assert stats["success_rate"] == 100.0

    @pytest.mark.asyncio
    async def test_chained_schedule_runs_on_next_tick(self, engine, executors, make_schedule):
        sync = ScriptedExecutor(ExecutionResult())
        notebook = ScriptedExecutor(ExecutionResult())
        executors.register("data_sync", sync)
        executors.register("notebook", notebook)
        parent = await make_schedule(recurrence_rule="1h")
        child = await make_schedule(
            domain="notebook", resource_id="nb-1", recurrence_rule="MANUAL",
            trigger_after_schedule_id=parent.id,
        )

        # The dependent job is picked up by the same drain.
        result = await engine.cron_tick()

        assert result["processed"] == 2
        assert notebook.calls[0].schedule_id == child.id

    @pytest.mark.asyncio
    async def test_limit_bounds_work_per_tick(self, engine, executors, make_schedule):
        executors.register("data_sync", ScriptedExecutor(*[ExecutionResult()] * 5))
        for n in range(5):
            await make_schedule(resource_id=f"model-{n}")

        first = await engine.cron_tick(limit=2)
        second = await engine.cron_tick(limit=10)

        assert first["enqueued"] == 5
        assert first["processed"] == 2
        assert second["enqueued"] == 0
        assert second["processed"] == 3
