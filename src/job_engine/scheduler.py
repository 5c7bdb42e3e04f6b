"""
Recurrence rules for schedule definitions.

A rule is one of:
- an interval: bare seconds ("3600") or a unit suffix ("30s", "5m", "1h", "1d")
- a five-field cron expression ("*/5 * * * *"), evaluated in the schedule's timezone
- a preset: HOURLY, DAILY, WEEKLY (cron shorthands) or MANUAL (never due on its own)
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from croniter import croniter
import pytz
import logging

from .errors import InvalidRecurrenceRule

logger = logging.getLogger(__name__)

INTERVAL_PATTERN = re.compile(r'^(\d+)([smhd]?)$')

_UNIT_SECONDS = {'': 1, 's': 1, 'm': 60, 'h': 3600, 'd': 86400}

PRESETS = {
    'HOURLY': '0 * * * *',
    'DAILY': '0 0 * * *',
    'WEEKLY': '0 0 * * 0',
}

MANUAL = 'MANUAL'


class ScheduleValidator:
    """
    Schedule validator following the Strategy pattern.
    This allows different validation strategies for different schedule types.
    """

    @staticmethod
    def validate_cron_expression(expr: str) -> bool:
        """Validate cron expression format."""
        try:
            croniter(expr)
            return True
        except (ValueError, TypeError):
            return False

    @staticmethod
    def validate_interval_expression(expr: str) -> bool:
        """Validate interval expression format."""
        match = INTERVAL_PATTERN.match(expr.strip().lower())
        return bool(match) and int(match.group(1)) > 0

    @staticmethod
    def validate_timezone(name: str) -> bool:
        try:
            pytz.timezone(name)
            return True
        except pytz.UnknownTimeZoneError:
            return False


def is_cron_expression(schedule_expr: str) -> bool:
    """
    Check if the schedule expression is a cron expression.

    Args:
        schedule_expr: The schedule expression to check

    Returns:
        True if it's a cron expression, False otherwise
    """
    parts = schedule_expr.strip().split()

    # Must have 5 parts for standard cron
    if len(parts) != 5:
        return False

    return ScheduleValidator.validate_cron_expression(schedule_expr)


@dataclass(frozen=True)
class RecurrenceRule:
    """A parsed recurrence rule. Exactly one of the fields describes it."""

    interval_seconds: Optional[int] = None
    cron_expr: Optional[str] = None
    manual: bool = False

    @classmethod
    def parse(cls, rule: str) -> "RecurrenceRule":
        if rule is None:
            raise InvalidRecurrenceRule(str(rule))
        expr = rule.strip()
        upper = expr.upper()
        if upper == MANUAL:
            return cls(manual=True)
        if upper in PRESETS:
            return cls(cron_expr=PRESETS[upper])
        if ScheduleValidator.validate_interval_expression(expr):
            match = INTERVAL_PATTERN.match(expr.lower())
            return cls(interval_seconds=int(match.group(1)) * _UNIT_SECONDS[match.group(2)])
        if is_cron_expression(expr):
            return cls(cron_expr=expr)
        raise InvalidRecurrenceRule(rule)

    @property
    def is_interval(self) -> bool:
        return self.interval_seconds is not None

    def next_after(self, reference: datetime, timezone: str = "UTC") -> Optional[datetime]:
        """
        Next run strictly after ``reference``.

        Args:
            reference: Naive UTC datetime to compute from
            timezone: Timezone the cron fields are expressed in

        Returns:
            A naive UTC datetime, or None for manual rules
        """
        if self.manual:
            return None
        if self.is_interval:
            return reference + timedelta(seconds=self.interval_seconds)
        return _calculate_cron_next_run(self.cron_expr, reference, timezone)


def validate_rule(rule: str) -> bool:
    try:
        RecurrenceRule.parse(rule)
        return True
    except InvalidRecurrenceRule:
        return False


def _calculate_cron_next_run(schedule_expr: str, reference: datetime, timezone: str) -> datetime:
    """Calculate next run time for cron expressions."""
    tz = pytz.timezone(timezone)
    local_reference = pytz.UTC.localize(reference).astimezone(tz)

    cron = croniter(schedule_expr, local_reference)
    next_run = cron.get_next(datetime)

    # Ensure the timezone is correct
    if next_run.tzinfo is None:
        next_run = tz.localize(next_run)

    # Convert to UTC and make timezone-naive for database storage
    next_run_utc = next_run.astimezone(pytz.UTC)
    return next_run_utc.replace(tzinfo=None)


def initial_next_run(rule: str, created_at: datetime, timezone: str = "UTC") -> Optional[datetime]:
    """
    First due time of a schedule that has never run.

    Interval rules are due at creation time; cron rules wait for their first
    match after creation; manual rules are never due.
    """
    parsed = RecurrenceRule.parse(rule)
    if parsed.manual:
        return None
    if parsed.is_interval:
        return created_at
    return parsed.next_after(created_at, timezone)


def calculate_next_run(rule: str, ran_at: datetime, timezone: str = "UTC") -> Optional[datetime]:
    """
    Next due time after a run at ``ran_at``.

    Always computed from the actual run time so a long outage yields a
    single run instead of a backlog of missed windows.
    """
    next_run = RecurrenceRule.parse(rule).next_after(ran_at, timezone)
    if next_run is not None and next_run < ran_at:
        logger.warning(f"Recurrence '{rule}' produced {next_run} before run time {ran_at}; clamping")
        next_run = ran_at
    return next_run
