"""Unified due-time view over data-sync, workflow and notebook schedules."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from .models import JobType, utcnow
from .registry import ScheduleRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DueItem:
    schedule_id: int
    domain: str
    resource_id: str
    space_id: str
    next_run_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    retry_policy: Optional[Dict[str, Any]] = None

    @property
    def job_type(self) -> str:
        return JobType.for_domain(self.domain).value


class DueTimeResolver:
    """
    Read-only step that lists what should run now.

    It never enqueues; callers (cron tick, "run all now") decide what to do
    with the returned items.
    """

    def __init__(self, registry: ScheduleRegistry):
        self.registry = registry

    async def resolve_due(self, space_id: Optional[str] = None, now: Optional[datetime] = None) -> List[DueItem]:
        now = now or utcnow()
        schedules = await self.registry.list_due(now, space_id=space_id)
        items = [
            DueItem(
                schedule_id=schedule.id,
                domain=schedule.domain,
                resource_id=schedule.resource_id,
                space_id=schedule.space_id,
                next_run_at=schedule.next_run_at,
                payload=schedule.payload or {},
                retry_policy=schedule.retry_policy,
            )
            for schedule in schedules
        ]
        # Storage already orders by next_run_at; keep the merge explicit across domains.
        items.sort(key=lambda item: (item.next_run_at, item.schedule_id))
        logger.info(f"Resolved {len(items)} due schedules" + (f" in space {space_id}" if space_id else ""))
        return items
