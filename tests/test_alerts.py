"""Tests for alert raising, deduplication and acknowledgement."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from job_engine.alerts import AlertManager
from job_engine.errors import AlertNotFound
from job_engine.executors import ExecutionResult
from job_engine.models import ExecutionRecord, utcnow
from job_engine.queue import RunOutcome


async def finish_run(engine, schedule, succeeded=False, **outcome):
    """Push one job for ``schedule`` through the queue and return its record."""
    job_id = await engine.queue.enqueue(
        "data_sync", schedule.resource_id, space_id=schedule.space_id, schedule_id=schedule.id
    )
    await engine.queue.dequeue_next()
    outcome.setdefault("error_message", None if succeeded else "ExecutorError: upstream down")
    if succeeded:
        return await engine.queue.complete(job_id, RunOutcome(**outcome))
    return await engine.queue.fail(job_id, RunOutcome(**outcome))


@pytest.fixture
def alerts(session_factory):
    return AlertManager(session_factory, failure_threshold=3, slow_execution_ms=60000, error_rate_threshold=0.1)


class RecordingNotifier:

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    async def __call__(self, notification):
        self.sent.append(notification)
        if self.error is not None:
            raise self.error


class TestRepeatedFailure:

    @pytest.mark.asyncio
    async def test_alert_only_on_third_consecutive_failure(self, engine, alerts, make_schedule):
        schedule = await make_schedule()

        for _ in range(2):
            assert await alerts.on_execution_record(await finish_run(engine, schedule)) == []
        raised = await alerts.on_execution_record(await finish_run(engine, schedule))

        assert len(raised) == 1
        assert raised[0].alert_type == "repeated_failure"
        assert raised[0].severity == "critical"
        assert raised[0].schedule_id == schedule.id
        assert "3 times" in raised[0].message

    @pytest.mark.asyncio
    async def test_success_resets_the_streak(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        await finish_run(engine, schedule)
        await finish_run(engine, schedule)
        await finish_run(engine, schedule, succeeded=True)

        record = await finish_run(engine, schedule)

        assert await alerts.consecutive_failures(schedule.id) == 1
        assert await alerts.on_execution_record(record) == []

    @pytest.mark.asyncio
    async def test_further_failures_refresh_the_open_alert(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        for _ in range(5):
            await alerts.on_execution_record(await finish_run(engine, schedule))

        open_alerts = await alerts.list_alerts(schedule_id=schedule.id)

        assert len(open_alerts) == 1
        assert open_alerts[0].occurrences == 3

    @pytest.mark.asyncio
    async def test_new_alert_after_acknowledgement(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        for _ in range(3):
            await alerts.on_execution_record(await finish_run(engine, schedule))
        first = (await alerts.list_alerts(schedule_id=schedule.id))[0]
        await alerts.acknowledge(first.id)

        raised = await alerts.on_execution_record(await finish_run(engine, schedule))

        assert raised[0].id != first.id
        everything = await alerts.list_alerts(schedule_id=schedule.id, include_acknowledged=True)
        assert len(everything) == 2

    @pytest.mark.asyncio
    async def test_failures_are_counted_per_schedule(self, engine, alerts, make_schedule):
        first = await make_schedule(resource_id="model-1")
        second = await make_schedule(resource_id="model-2")
        await finish_run(engine, first)
        await finish_run(engine, second)
        await finish_run(engine, first)

        assert await alerts.consecutive_failures(first.id) == 2
        assert await alerts.consecutive_failures(second.id) == 1


class TestOtherAlerts:

    @pytest.mark.asyncio
    async def test_slow_execution(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        record = await finish_run(engine, schedule, succeeded=True, duration_ms=90000)

        raised = await alerts.on_execution_record(record)

        assert [a.alert_type for a in raised] == ["slow_execution"]
        assert raised[0].severity == "warning"

    @pytest.mark.asyncio
    async def test_error_rate(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        record = await finish_run(
            engine, schedule, succeeded=True,
            result=ExecutionResult(records_processed=100, records_failed=25),
        )

        raised = await alerts.on_execution_record(record)

        assert [a.alert_type for a in raised] == ["error_rate"]
        assert "25.0%" in raised[0].message

    @pytest.mark.asyncio
    async def test_low_error_rate_is_fine(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        record = await finish_run(
            engine, schedule, succeeded=True,
            result=ExecutionResult(records_processed=100, records_failed=5),
        )
        assert await alerts.on_execution_record(record) == []

    @pytest.mark.asyncio
    async def test_jobs_without_schedule_are_ignored(self, engine, alerts):
        job_id = await engine.queue.enqueue("import", "7")
        await engine.queue.dequeue_next()
        record = await engine.queue.fail(job_id, RunOutcome(duration_ms=999999))

        assert await alerts.on_execution_record(record) == []


class TestAcknowledge:

    @pytest.mark.asyncio
    async def test_acknowledge_is_idempotent(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        record = await finish_run(engine, schedule, succeeded=True, duration_ms=90000)
        alert = (await alerts.on_execution_record(record))[0]

        first = await alerts.acknowledge(alert.id)
        second = await alerts.acknowledge(alert.id)

        assert first.acknowledged
        assert second.acknowledged_at == first.acknowledged_at
        assert await alerts.list_alerts() == []

    @pytest.mark.asyncio
    async def test_acknowledge_unknown_alert(self, alerts):
        with pytest.raises(AlertNotFound):
            await alerts.acknowledge(404)


class TestScheduleOverrides:
    """Per-schedule alert_config takes precedence over the manager defaults."""

    @pytest.mark.asyncio
    async def test_lower_failure_threshold(self, engine, alerts, make_schedule):
        schedule = await make_schedule(alert_config={"failure_threshold": 2})

        assert await alerts.on_execution_record(await finish_run(engine, schedule)) == []
        raised = await alerts.on_execution_record(await finish_run(engine, schedule))

        assert [a.alert_type for a in raised] == ["repeated_failure"]
        assert raised[0].severity == "critical"

    @pytest.mark.asyncio
    async def test_critical_threshold_escalates_open_alert(self, engine, alerts, make_schedule):
        schedule = await make_schedule(alert_config={"failure_threshold": 2, "critical_threshold": 4})
        await finish_run(engine, schedule)

        raised = await alerts.on_execution_record(await finish_run(engine, schedule))
        assert raised[0].severity == "warning"

        await alerts.on_execution_record(await finish_run(engine, schedule))
        raised = await alerts.on_execution_record(await finish_run(engine, schedule))

        assert raised[0].severity == "critical"
        assert len(await alerts.list_alerts(schedule_id=schedule.id)) == 1

    @pytest.mark.asyncio
    async def test_failures_outside_time_window_do_not_count(self, engine, alerts, session_factory, make_schedule):
        schedule = await make_schedule(alert_config={"time_window_hours": 1})
        await finish_run(engine, schedule)
        await finish_run(engine, schedule)
        async with session_factory() as session:
            await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.schedule_id == schedule.id)
                .values(completed_at=utcnow() - timedelta(hours=2))
            )
            await session.commit()

        record = await finish_run(engine, schedule)

        assert await alerts.on_execution_record(record) == []

    @pytest.mark.asyncio
    async def test_duration_limit_override(self, engine, alerts, make_schedule):
        schedule = await make_schedule(alert_config={"max_duration_ms": 1000, "unknown_key": 1})
        record = await finish_run(engine, schedule, succeeded=True, duration_ms=5000)

        raised = await alerts.on_execution_record(record)

        assert [a.alert_type for a in raised] == ["slow_execution"]


class TestRecordCountAnomaly:

    async def _history(self, engine, schedule, *fetched):
        for count in fetched:
            await finish_run(engine, schedule, succeeded=True, result=ExecutionResult(records_fetched=count))

    @pytest.mark.asyncio
    async def test_spike_raises_anomaly(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        await self._history(engine, schedule, 100, 110, 90, 100)
        record = await finish_run(engine, schedule, succeeded=True, result=ExecutionResult(records_fetched=400))

        raised = await alerts.on_execution_record(record)

        assert [a.alert_type for a in raised] == ["record_count_anomaly"]
        assert raised[0].severity == "critical"
        assert raised[0].message.startswith("Record count anomaly: 400 fetched (average: 100")

    @pytest.mark.asyncio
    async def test_normal_count_is_fine(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        await self._history(engine, schedule, 100, 110, 90, 100)
        record = await finish_run(engine, schedule, succeeded=True, result=ExecutionResult(records_fetched=105))

        assert await alerts.on_execution_record(record) == []

    @pytest.mark.asyncio
    async def test_needs_history(self, engine, alerts, make_schedule):
        schedule = await make_schedule()
        await self._history(engine, schedule, 100)
        record = await finish_run(engine, schedule, succeeded=True, result=ExecutionResult(records_fetched=5000))

        assert await alerts.on_execution_record(record) == []

    @pytest.mark.asyncio
    async def test_deviation_threshold_override(self, engine, alerts, make_schedule):
        schedule = await make_schedule(alert_config={"deviation_threshold": 50})
        await self._history(engine, schedule, 100, 110, 90, 100)
        record = await finish_run(engine, schedule, succeeded=True, result=ExecutionResult(records_fetched=400))

        assert await alerts.on_execution_record(record) == []


class TestNotifications:

    @pytest.mark.asyncio
    async def test_failure_notifies_recipients(self, engine, session_factory, make_schedule):
        notifier = RecordingNotifier()
        alerts = AlertManager(session_factory, failure_threshold=3, notifier=notifier)
        schedule = await make_schedule(notification_emails=["ops@example.com"])

        await alerts.on_execution_record(await finish_run(engine, schedule))

        assert len(notifier.sent) == 1
        sent = notifier.sent[0]
        assert sent["event"] == "execution_failed"
        assert sent["recipients"] == ["ops@example.com"]
        assert sent["schedule_name"] == "Orders sync"
        assert sent["error_message"] == "ExecutorError: upstream down"
        assert sent["alerts"] == []

    @pytest.mark.asyncio
    async def test_raised_alerts_are_included(self, engine, session_factory, make_schedule):
        notifier = RecordingNotifier()
        alerts = AlertManager(session_factory, failure_threshold=3, notifier=notifier)
        schedule = await make_schedule(notification_emails=["ops@example.com"])
        for _ in range(3):
            await alerts.on_execution_record(await finish_run(engine, schedule))

        assert [n["alerts"] for n in notifier.sent][:2] == [[], []]
        assert notifier.sent[2]["alerts"][0]["type"] == "repeated_failure"

    @pytest.mark.asyncio
    async def test_success_only_when_requested(self, engine, session_factory, make_schedule):
        notifier = RecordingNotifier()
        alerts = AlertManager(session_factory, notifier=notifier)
        quiet = await make_schedule(resource_id="model-1", notification_emails=["ops@example.com"])
        chatty = await make_schedule(
            resource_id="model-2", notification_emails=["ops@example.com"], notify_on_success=True
        )

        await alerts.on_execution_record(await finish_run(engine, quiet, succeeded=True))
        await alerts.on_execution_record(await finish_run(engine, chatty, succeeded=True))

        assert [(n["schedule_id"], n["event"]) for n in notifier.sent] == [(chatty.id, "execution_succeeded")]

    @pytest.mark.asyncio
    async def test_opt_out_and_missing_recipients(self, engine, session_factory, make_schedule):
        notifier = RecordingNotifier()
        alerts = AlertManager(session_factory, notifier=notifier)
        muted = await make_schedule(
            resource_id="model-1", notification_emails=["ops@example.com"], notify_on_failure=False
        )
        nobody = await make_schedule(resource_id="model-2")

        await alerts.on_execution_record(await finish_run(engine, muted))
        await alerts.on_execution_record(await finish_run(engine, nobody))

        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_notifier_errors_do_not_break_alerting(self, engine, session_factory, make_schedule):
        notifier = RecordingNotifier(error=ConnectionError("webhook down"))
        alerts = AlertManager(session_factory, slow_execution_ms=1000, notifier=notifier)
        schedule = await make_schedule(notification_emails=["ops@example.com"])
        record = await finish_run(engine, schedule, duration_ms=5000)

        raised = await alerts.on_execution_record(record)

        assert [a.alert_type for a in raised] == ["slow_execution"]
        assert len(notifier.sent) == 1
