"""
Schedule registry: storage of schedule definitions across all domains.

Every call opens its own short session; nothing about a schedule is cached
in process memory, so several engine instances can share one database.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from .errors import InvalidRecurrenceRule, ScheduleNotFound
from .models import ChainOn, ScheduleDefinition, ScheduleDomain, utcnow
from .scheduler import ScheduleValidator, calculate_next_run, initial_next_run, validate_rule

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "name", "resource_id", "recurrence_rule", "timezone", "enabled",
    "payload", "chain_on", "notify_on_failure", "notify_on_success",
)
# An explicit None clears these.
_CLEARABLE_FIELDS = ("retry_policy", "trigger_after_schedule_id", "alert_config", "notification_emails")


class ScheduleRegistry:
    """Reads and writes ``ScheduleDefinition`` rows."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create_schedule(
        self,
        *,
        name: str,
        domain: str,
        space_id: str,
        resource_id: str,
        recurrence_rule: str,
        timezone: str = "UTC",
        enabled: bool = True,
        payload: Optional[Dict[str, Any]] = None,
        retry_policy: Optional[Dict[str, Any]] = None,
        trigger_after_schedule_id: Optional[int] = None,
        chain_on: str = ChainOn.SUCCESS.value,
        alert_config: Optional[Dict[str, Any]] = None,
        notify_on_failure: bool = True,
        notify_on_success: bool = False,
        notification_emails: Optional[List[str]] = None,
        created_at: Optional[datetime] = None,
    ) -> ScheduleDefinition:
        """Create a schedule; interval rules are due immediately."""
        domain = ScheduleDomain(domain).value
        chain_on = ChainOn(chain_on).value
        _validate(recurrence_rule, timezone)
        created_at = created_at or utcnow()

        schedule = ScheduleDefinition(
            name=name,
            domain=domain,
            space_id=space_id,
            resource_id=resource_id,
            recurrence_rule=recurrence_rule,
            timezone=timezone,
            enabled=enabled,
            payload=payload or {},
            retry_policy=retry_policy,
            trigger_after_schedule_id=trigger_after_schedule_id,
            chain_on=chain_on,
            alert_config=alert_config,
            notify_on_failure=notify_on_failure,
            notify_on_success=notify_on_success,
            notification_emails=notification_emails,
            next_run_at=initial_next_run(recurrence_rule, created_at, timezone),
            created_at=created_at,
            updated_at=created_at,
        )
        async with self.session_factory() as session:
            if trigger_after_schedule_id is not None:
                await _get_live(session, trigger_after_schedule_id)
            session.add(schedule)
            await session.commit()
            await session.refresh(schedule)

        logger.info(f"Created {domain} schedule {schedule.id} ({name}) next_run_at={schedule.next_run_at}")
        return schedule

    async def get(self, schedule_id: int, include_deleted: bool = False) -> ScheduleDefinition:
        async with self.session_factory() as session:
            if include_deleted:
                schedule = await session.get(ScheduleDefinition, schedule_id)
                if schedule is None:
                    raise ScheduleNotFound(schedule_id)
                return schedule
            return await _get_live(session, schedule_id)

    async def update_schedule(self, schedule_id: int, changes: Dict[str, Any]) -> ScheduleDefinition:
        """Apply configuration changes; recomputes next_run_at when timing changes."""
        async with self.session_factory() as session:
            schedule = await _get_live(session, schedule_id)

            rule = changes.get("recurrence_rule") or schedule.recurrence_rule
            tz = changes.get("timezone") or schedule.timezone
            _validate(rule, tz)
            if changes.get("chain_on") is not None:
                changes["chain_on"] = ChainOn(changes["chain_on"]).value
            if changes.get("trigger_after_schedule_id") is not None:
                await _get_live(session, changes["trigger_after_schedule_id"])
                await _check_chain(session, schedule_id, changes["trigger_after_schedule_id"])

            timing_changed = (
                rule != schedule.recurrence_rule
                or tz != schedule.timezone
                or (changes.get("enabled") is True and not schedule.enabled)
            )
            for field_name in _UPDATABLE_FIELDS:
                if changes.get(field_name) is not None:
                    setattr(schedule, field_name, changes[field_name])
            for field_name in _CLEARABLE_FIELDS:
                if field_name in changes:
                    setattr(schedule, field_name, changes[field_name])

            if timing_changed:
                if schedule.last_run_at is None:
                    schedule.next_run_at = initial_next_run(rule, utcnow(), tz)
                else:
                    schedule.next_run_at = calculate_next_run(rule, schedule.last_run_at, tz)
            schedule.updated_at = utcnow()

            await session.commit()
            await session.refresh(schedule)

        logger.info(f"Updated schedule {schedule.id}: {schedule.name}")
        return schedule

    async def soft_delete(self, schedule_id: int) -> None:
        async with self.session_factory() as session:
            now = utcnow()
            result = await session.execute(
                update(ScheduleDefinition)
                .where(ScheduleDefinition.id == schedule_id, ScheduleDefinition.deleted_at.is_(None))
                .values(deleted_at=now, enabled=False, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ScheduleNotFound(schedule_id)
            await session.commit()
        logger.info(f"Soft-deleted schedule {schedule_id}")

    async def list_schedules(
        self,
        domain: Optional[str] = None,
        space_id: Optional[str] = None,
        enabled: Optional[bool] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[ScheduleDefinition]:
        query = select(ScheduleDefinition).where(ScheduleDefinition.deleted_at.is_(None))
        if domain:
            query = query.where(ScheduleDefinition.domain == ScheduleDomain(domain).value)
        if space_id:
            query = query.where(ScheduleDefinition.space_id == space_id)
        if enabled is not None:
            query = query.where(ScheduleDefinition.enabled == enabled)
        query = query.order_by(ScheduleDefinition.id).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def list_enabled_schedules(
        self, domain: Optional[str] = None, space_id: Optional[str] = None
    ) -> List[ScheduleDefinition]:
        return await self.list_schedules(domain=domain, space_id=space_id, enabled=True)

    async def list_due(self, now: datetime, space_id: Optional[str] = None) -> List[ScheduleDefinition]:
        """Enabled, live schedules whose next_run_at has passed, oldest first."""
        query = select(ScheduleDefinition).where(
            ScheduleDefinition.enabled.is_(True),
            ScheduleDefinition.deleted_at.is_(None),
            ScheduleDefinition.next_run_at.is_not(None),
            ScheduleDefinition.next_run_at <= now,
        )
        if space_id:
            query = query.where(ScheduleDefinition.space_id == space_id)
        query = query.order_by(ScheduleDefinition.next_run_at, ScheduleDefinition.id)
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def list_dependents(self, schedule_id: int) -> List[ScheduleDefinition]:
        """Enabled schedules chained to run after ``schedule_id``."""
        query = (
            select(ScheduleDefinition)
            .where(
                ScheduleDefinition.trigger_after_schedule_id == schedule_id,
                ScheduleDefinition.enabled.is_(True),
                ScheduleDefinition.deleted_at.is_(None),
            )
            .order_by(ScheduleDefinition.id)
        )
        async with self.session_factory() as session:
            return list((await session.execute(query)).scalars().all())

    async def record_run(
        self, schedule_id: int, ran_at: datetime, next_run_at: Optional[datetime] = None
    ) -> Optional[datetime]:
        """
        Store a run and advance the schedule.

        ``next_run_at`` defaults to the rule applied to ``ran_at`` (not to the
        missed window). Returns the stored next_run_at.
        """
        async with self.session_factory() as session:
            schedule = await session.get(ScheduleDefinition, schedule_id)
            if schedule is None:
                raise ScheduleNotFound(schedule_id)
            if next_run_at is None:
                next_run_at = calculate_next_run(schedule.recurrence_rule, ran_at, schedule.timezone)
            if next_run_at is not None and next_run_at < ran_at:
                next_run_at = ran_at

            await session.execute(
                update(ScheduleDefinition)
                .where(ScheduleDefinition.id == schedule_id)
                .values(last_run_at=ran_at, next_run_at=next_run_at, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()

        logger.info(f"Schedule {schedule_id} ran at {ran_at}; next run at {next_run_at}")
        return next_run_at


async def _get_live(session, schedule_id: int) -> ScheduleDefinition:
    result = await session.execute(
        select(ScheduleDefinition).where(
            ScheduleDefinition.id == schedule_id, ScheduleDefinition.deleted_at.is_(None)
        )
    )
    schedule = result.scalar_one_or_none()
    if schedule is None:
        raise ScheduleNotFound(schedule_id)
    return schedule


async def _check_chain(session, schedule_id: int, parent_id: int) -> None:
    """Reject chaining ``schedule_id`` after ``parent_id`` if that closes a loop."""
    seen = set()
    current = parent_id
    while current is not None and current not in seen:
        if current == schedule_id:
            raise ValueError(f"Chaining schedule {schedule_id} after {parent_id} would create a cycle")
        seen.add(current)
        result = await session.execute(
            select(ScheduleDefinition.trigger_after_schedule_id).where(ScheduleDefinition.id == current)
        )
        current = result.scalar_one_or_none()


def _validate(rule: str, timezone: str) -> None:
    if not validate_rule(rule):
        raise InvalidRecurrenceRule(rule)
    if not ScheduleValidator.validate_timezone(timezone):
        raise InvalidRecurrenceRule(f"{rule} @ {timezone}")
