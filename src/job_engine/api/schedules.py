"""Schedule configuration, due-time preview and manual triggering."""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
import logging

from ..errors import JobEngineError
from ..models import ScheduleDomain
from ..schemas import (
    DueItemResponse, JobQueuedResponse, RunDueResponse, ScheduleCreate, ScheduleListResponse,
    ScheduleResponse, ScheduleStatsResponse, ScheduleUpdate,
)
from ..service import JobEngine
from .deps import get_engine, require_api_key, to_http_error

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/schedules", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    schedule_data: ScheduleCreate,
    engine: JobEngine = Depends(get_engine)
) -> ScheduleResponse:
    """
    Create a new schedule.

    Interval schedules are due immediately; cron schedules wait for their
    first matching time.
    """
    try:
        data = schedule_data.model_dump()
        data["domain"] = schedule_data.domain.value
        data["chain_on"] = schedule_data.chain_on.value
        schedule = await engine.registry.create_schedule(**data)
        return ScheduleResponse.model_validate(schedule)
    except JobEngineError as e:
        raise to_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating schedule: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while creating schedule"
        )


@router.get("/schedules", response_model=ScheduleListResponse)
async def list_schedules(
    domain: Optional[ScheduleDomain] = Query(None, description="Filter by domain"),
    space_id: Optional[str] = Query(None, description="Filter by space"),
    enabled: Optional[bool] = Query(None, description="Filter by enabled flag"),
    engine: JobEngine = Depends(get_engine)
) -> ScheduleListResponse:
    """List live (not deleted) schedules."""
    try:
        schedules = await engine.registry.list_schedules(
            domain=domain.value if domain else None,
            space_id=space_id,
            enabled=enabled,
        )
        return ScheduleListResponse(
            schedules=[ScheduleResponse.model_validate(s) for s in schedules],
            total=len(schedules)
        )
    except Exception as e:
        logger.error(f"Error listing schedules: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while listing schedules"
        )


@router.get("/schedules/due", response_model=list[DueItemResponse])
async def list_due_schedules(
    space_id: Optional[str] = Query(None, description="Only this space"),
    engine: JobEngine = Depends(get_engine)
) -> list[DueItemResponse]:
    """Preview what the next cron tick would enqueue, oldest-overdue first."""
    try:
        items = await engine.resolver.resolve_due(space_id=space_id)
        return [DueItemResponse.model_validate(item) for item in items]
    except Exception as e:
        logger.error(f"Error resolving due schedules: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while resolving due schedules"
        )


@router.post("/schedules/run-due", response_model=RunDueResponse, dependencies=[Depends(require_api_key)])
async def run_due_schedules(
    space_id: Optional[str] = Query(None, description="Only this space"),
    engine: JobEngine = Depends(get_engine)
) -> RunDueResponse:
    """
    Queue every due schedule now without waiting for the next tick.

    Jobs are only enqueued; the next cron tick drains them.
    """
    try:
        return RunDueResponse(**await engine.run_all_due(space_id=space_id))
    except Exception as e:
        logger.error(f"Error running due schedules: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while running due schedules"
        )


@router.get("/schedules/stats", response_model=ScheduleStatsResponse)
async def schedule_stats(
    space_id: Optional[str] = Query(None, description="Only this space"),
    engine: JobEngine = Depends(get_engine)
) -> ScheduleStatsResponse:
    """Schedule counts, last-24h execution outcomes and open alerts."""
    try:
        return ScheduleStatsResponse(**await engine.stats(space_id=space_id))
    except Exception as e:
        logger.error(f"Error computing schedule stats: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while computing stats"
        )


@router.get("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(
    schedule_id: int,
    engine: JobEngine = Depends(get_engine)
) -> ScheduleResponse:
    try:
        return ScheduleResponse.model_validate(await engine.registry.get(schedule_id))
    except JobEngineError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error getting schedule {schedule_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while getting schedule"
        )


@router.put("/schedules/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: int,
    update_data: ScheduleUpdate,
    engine: JobEngine = Depends(get_engine)
) -> ScheduleResponse:
    """Update a schedule; changing its rule or re-enabling it recomputes the next run."""
    try:
        changes = update_data.model_dump(exclude_unset=True)
        if update_data.chain_on is not None:
            changes["chain_on"] = update_data.chain_on.value
        schedule = await engine.registry.update_schedule(schedule_id, changes)
        return ScheduleResponse.model_validate(schedule)
    except JobEngineError as e:
        raise to_http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating schedule {schedule_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while updating schedule"
        )


@router.delete("/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(
    schedule_id: int,
    engine: JobEngine = Depends(get_engine)
) -> None:
    """
    Delete a schedule.

    The row is kept (soft delete) so its execution history and alerts stay
    readable; it is excluded from due computation from now on.
    """
    try:
        await engine.registry.soft_delete(schedule_id)
    except JobEngineError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error deleting schedule {schedule_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while deleting schedule"
        )


@router.post("/schedules/{schedule_id}/run", response_model=JobQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_schedule(
    schedule_id: int,
    engine: JobEngine = Depends(get_engine)
) -> JobQueuedResponse:
    """
    Run a schedule now.

    Queues a job for the schedule's resource, bypassing its due time. The
    job is processed by the next cron tick.
    """
    try:
        job_id = await engine.trigger_schedule(schedule_id)
        return JobQueuedResponse(message="Schedule queued for immediate execution", job_id=job_id)
    except JobEngineError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error triggering schedule {schedule_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while triggering schedule"
        )
