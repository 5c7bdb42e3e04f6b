"""
Alert manager: turns execution history into operator alerts.

Consecutive failures are counted from stored execution records on every
call, so several engine instances agree on the count without sharing
memory. An unacknowledged alert of the same (schedule, type) is refreshed
instead of duplicated.

Thresholds come from settings and can be overridden per schedule through
its ``alert_config`` JSON. When a notifier is configured, schedules with
recipients are told about failures, raised alerts and (if they ask for it)
successes.
"""

import statistics
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import AlertNotFound
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    ExecutionRecord,
    ExecutionStatus,
    ScheduleDefinition,
    utcnow,
)
from .notifications import Notifier
from .settings import settings

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {AlertSeverity.INFO.value: 0, AlertSeverity.WARNING.value: 1, AlertSeverity.CRITICAL.value: 2}

# Fewer successful runs than this and there is no baseline to deviate from.
_ANOMALY_MIN_SAMPLES = 2


@dataclass(frozen=True)
class AlertThresholds:
    """Effective thresholds for one schedule."""

    failure_threshold: int
    critical_threshold: int
    time_window_hours: Optional[float]
    max_duration_ms: int
    max_error_rate: float
    deviation_threshold: float
    anomaly_window_days: int

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "AlertThresholds":
        """Overlay a schedule's ``alert_config``; unknown keys are ignored."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        values = {key: value for key, value in overrides.items() if key in known and value is not None}
        if "failure_threshold" in values and "critical_threshold" not in values:
            values["critical_threshold"] = values["failure_threshold"]
        return replace(self, **values)


class AlertManager:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        failure_threshold: Optional[int] = None,
        slow_execution_ms: Optional[int] = None,
        error_rate_threshold: Optional[float] = None,
        deviation_threshold: Optional[float] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.session_factory = session_factory
        failure_threshold = failure_threshold or settings.alert_failure_threshold
        self.defaults = AlertThresholds(
            failure_threshold=failure_threshold,
            critical_threshold=failure_threshold,
            time_window_hours=None,
            max_duration_ms=slow_execution_ms or settings.alert_slow_execution_ms,
            max_error_rate=(
                error_rate_threshold if error_rate_threshold is not None else settings.alert_error_rate_threshold
            ),
            deviation_threshold=deviation_threshold or settings.alert_anomaly_deviation,
            anomaly_window_days=settings.alert_anomaly_window_days,
        )
        self.notifier = notifier

    def thresholds_for(self, schedule: Optional[ScheduleDefinition]) -> AlertThresholds:
        return self.defaults.with_overrides(schedule.alert_config if schedule is not None else None)

    async def on_execution_record(self, record: ExecutionRecord) -> List[Alert]:
        """Inspect a freshly written record; returns alerts created or refreshed."""
        if record.schedule_id is None:
            return []

        async with self.session_factory() as session:
            schedule = await session.get(ScheduleDefinition, record.schedule_id)
        limits = self.thresholds_for(schedule)

        raised = []
        if record.status == ExecutionStatus.FAILED.value:
            failures = await self.consecutive_failures(record.schedule_id, limits)
            if failures >= limits.failure_threshold:
                severity = AlertSeverity.CRITICAL if failures >= limits.critical_threshold else AlertSeverity.WARNING
                raised.append(await self._raise(
                    record,
                    AlertType.REPEATED_FAILURE,
                    severity,
                    f"Schedule {record.schedule_id} failed {failures} times in a row: {record.error_message or 'unknown error'}",
                ))

        if record.duration_ms > limits.max_duration_ms:
            raised.append(await self._raise(
                record,
                AlertType.SLOW_EXECUTION,
                AlertSeverity.WARNING,
                f"Schedule {record.schedule_id} took {record.duration_ms / 1000:.1f}s "
                f"(threshold {limits.max_duration_ms / 1000:.1f}s)",
            ))

        if record.records_failed:
            error_rate = record.records_failed / max(record.records_processed, 1)
            if error_rate > limits.max_error_rate:
                raised.append(await self._raise(
                    record,
                    AlertType.ERROR_RATE,
                    AlertSeverity.CRITICAL if error_rate > limits.max_error_rate * 2 else AlertSeverity.WARNING,
                    f"High error rate: {error_rate * 100:.1f}% "
                    f"({record.records_failed}/{record.records_processed} records failed)",
                ))

        if record.status == ExecutionStatus.SUCCESS.value:
            anomaly = await self._record_count_anomaly(record, limits)
            if anomaly is not None:
                raised.append(anomaly)

        await self._notify(schedule, record, raised)
        return raised

    async def consecutive_failures(self, schedule_id: int, limits: Optional[AlertThresholds] = None) -> int:
        """Number of FAILED records since the last SUCCESS for a schedule."""
        limits = limits or self.defaults
        # Only the most recent window matters once the threshold is reached.
        window = max(limits.failure_threshold, limits.critical_threshold) + 1
        query = select(ExecutionRecord.status).where(ExecutionRecord.schedule_id == schedule_id)
        if limits.time_window_hours:
            query = query.where(ExecutionRecord.completed_at >= utcnow() - timedelta(hours=limits.time_window_hours))
        async with self.session_factory() as session:
            result = await session.execute(
                query.order_by(ExecutionRecord.completed_at.desc(), ExecutionRecord.id.desc()).limit(window)
            )
            statuses = result.scalars().all()
        count = 0
        for status in statuses:
            if status != ExecutionStatus.FAILED.value:
                break
            count += 1
        return count

    async def _record_count_anomaly(self, record: ExecutionRecord, limits: AlertThresholds) -> Optional[Alert]:
        """Compare records_fetched with the schedule's recent successful runs."""
        since = utcnow() - timedelta(days=limits.anomaly_window_days)
        async with self.session_factory() as session:
            result = await session.execute(
                select(ExecutionRecord.records_fetched).where(
                    ExecutionRecord.schedule_id == record.schedule_id,
                    ExecutionRecord.status == ExecutionStatus.SUCCESS.value,
                    ExecutionRecord.completed_at >= since,
                    ExecutionRecord.id != record.id,
                )
            )
            history = [value or 0 for value in result.scalars().all()]
        if len(history) < _ANOMALY_MIN_SAMPLES:
            return None

        average = statistics.mean(history)
        spread = statistics.stdev(history)
        if average <= 0 or spread <= 0:
            return None
        deviation = abs(record.records_fetched - average) / spread
        if deviation <= limits.deviation_threshold:
            return None
        return await self._raise(
            record,
            AlertType.RECORD_COUNT_ANOMALY,
            AlertSeverity.CRITICAL if deviation > limits.deviation_threshold * 2 else AlertSeverity.WARNING,
            f"Record count anomaly: {record.records_fetched} fetched "
            f"(average: {average:.0f}, deviation: {deviation:.2f}σ)",
        )

    async def _notify(
        self, schedule: Optional[ScheduleDefinition], record: ExecutionRecord, raised: List[Alert]
    ) -> None:
        if self.notifier is None or schedule is None or not schedule.notification_emails:
            return
        succeeded = record.status == ExecutionStatus.SUCCESS.value
        if succeeded and not (schedule.notify_on_success or (raised and schedule.notify_on_failure)):
            return
        if not succeeded and not schedule.notify_on_failure:
            return

        notification = {
            "event": "execution_succeeded" if succeeded else "execution_failed",
            "recipients": list(schedule.notification_emails),
            "schedule_id": schedule.id,
            "schedule_name": schedule.name,
            "space_id": record.space_id,
            "job_id": record.job_id,
            "status": record.status,
            "duration_ms": record.duration_ms,
            "records_processed": record.records_processed,
            "error_message": record.error_message,
            "completed_at": record.completed_at.isoformat() if record.completed_at else None,
            "alerts": [
                {"id": alert.id, "type": alert.alert_type, "severity": alert.severity, "message": alert.message}
                for alert in raised
            ],
        }
        try:
            await self.notifier(notification)
            logger.info(f"Sent {notification['event']} notification for schedule {schedule.id}")
        except Exception as e:
            logger.error(f"Notification for schedule {schedule.id} failed: {str(e)}")

    async def _raise(self, record: ExecutionRecord, alert_type: AlertType, severity: AlertSeverity, message: str) -> Alert:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Alert)
                .where(
                    Alert.schedule_id == record.schedule_id,
                    Alert.alert_type == alert_type.value,
                    Alert.acknowledged.is_(False),
                )
                .order_by(Alert.id.desc())
                .limit(1)
            )
            alert = result.scalar_one_or_none()
            now = utcnow()
            if alert is not None:
                alert.message = message
                alert.updated_at = now
                alert.occurrences = (alert.occurrences or 1) + 1
                if _SEVERITY_RANK[severity.value] > _SEVERITY_RANK.get(alert.severity, 0):
                    alert.severity = severity.value
                logger.info(f"Refreshed {alert_type.value} alert {alert.id} for schedule {record.schedule_id}")
            else:
                alert = Alert(
                    schedule_id=record.schedule_id,
                    space_id=record.space_id,
                    alert_type=alert_type.value,
                    severity=severity.value,
                    message=message,
                    occurrences=1,
                    acknowledged=False,
                    created_at=now,
                    updated_at=now,
                )
                session.add(alert)
                logger.warning(f"Raised {severity.value} {alert_type.value} alert for schedule {record.schedule_id}: {message}")
            await session.commit()
            return alert

    async def acknowledge(self, alert_id: int) -> Alert:
        """Mark an alert acknowledged; acknowledging twice keeps the first timestamp."""
        async with self.session_factory() as session:
            alert = await session.get(Alert, alert_id)
            if alert is None:
                raise AlertNotFound(alert_id)
            if not alert.acknowledged:
                alert.acknowledged = True
                alert.acknowledged_at = utcnow()
                alert.updated_at = alert.acknowledged_at
                await session.commit()
                logger.info(f"Alert {alert_id} acknowledged")
            return alert

    async def list_alerts(
        self,
        space_id: Optional[str] = None,
        schedule_id: Optional[int] = None,
        include_acknowledged: bool = False,
        limit: int = 50,
    ) -> List[Alert]:
        query = select(Alert)
        if space_id:
            query = query.where(Alert.space_id == space_id)
        if schedule_id is not None:
            query = query.where(Alert.schedule_id == schedule_id)
        if not include_acknowledged:
            query = query.where(Alert.acknowledged.is_(False))
        query = query.order_by(Alert.updated_at.desc(), Alert.id.desc()).limit(limit)
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())
