"""
Job queue API endpoints.

The cron trigger and the manual processing scan are the external entry
points of the engine; the remaining routes enqueue and inspect jobs.
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
import logging

from ..errors import JobEngineError
from ..models import JobStatus, JobType
from ..schemas import (
    CronTickResponse, JobCreate, JobListResponse, JobQueuedResponse,
    JobResponse, ProcessResponse,
)
from ..service import JobEngine
from .deps import get_engine, require_api_key, to_http_error

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run_cron(engine: JobEngine, limit: Optional[int], space_id: Optional[str]) -> CronTickResponse:
    try:
        return CronTickResponse(**await engine.cron_tick(limit=limit, space_id=space_id))
    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Cron tick failed: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while processing due jobs"
        )


@router.post("/jobs/cron", response_model=CronTickResponse, dependencies=[Depends(require_api_key)])
async def cron_trigger(
    limit: Optional[int] = Query(None, ge=1, le=100, description="Maximum jobs to process"),
    space_id: Optional[str] = Query(None, description="Only resolve schedules of this space"),
    engine: JobEngine = Depends(get_engine)
) -> CronTickResponse:
    """
    Cron trigger.

    Resolves due schedules, enqueues them (skipping resources already in
    flight) and processes pending jobs.
    """
    return await _run_cron(engine, limit, space_id)


@router.get("/jobs/cron", response_model=CronTickResponse, dependencies=[Depends(require_api_key)])
async def cron_trigger_get(
    limit: Optional[int] = Query(None, ge=1, le=100),
    space_id: Optional[str] = Query(None),
    engine: JobEngine = Depends(get_engine)
) -> CronTickResponse:
    """Same as ``POST /jobs/cron``, reachable from a browser."""
    return await _run_cron(engine, limit, space_id)


@router.post("/jobs/process", response_model=ProcessResponse, dependencies=[Depends(require_api_key)])
async def process_jobs(
    batch_size: int = Query(10, ge=1, le=100, description="Pending transfer requests to pick up"),
    engine: JobEngine = Depends(get_engine)
) -> ProcessResponse:
    """
    Manual job processing.

    Picks up pending import/export requests, enqueues them directly and
    processes the queue.
    """
    try:
        return ProcessResponse(**await engine.process_transfer_requests(batch_size))
    except Exception as e:
        logger.exception(f"Manual job processing failed: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while processing jobs"
        )


@router.post("/jobs", response_model=JobQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    job_data: JobCreate,
    engine: JobEngine = Depends(get_engine)
) -> JobQueuedResponse:
    """Enqueue a one-off job."""
    try:
        job_id = await engine.queue.enqueue(
            job_data.type.value,
            job_data.resource_id,
            space_id=job_data.space_id,
            payload=job_data.payload,
            retry_policy=job_data.retry_policy,
        )
        return JobQueuedResponse(message="Job queued", job_id=job_id)
    except JobEngineError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error enqueuing job: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while enqueuing job"
        )


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(10, ge=1, le=100, description="Page size"),
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    type: Optional[JobType] = Query(None, description="Filter by job type"),
    space_id: Optional[str] = Query(None, description="Filter by space"),
    schedule_id: Optional[int] = Query(None, description="Filter by source schedule"),
    engine: JobEngine = Depends(get_engine)
) -> JobListResponse:
    """
    List jobs.

    Returns a paginated list of jobs, newest first, with optional filtering.
    """
    try:
        jobs, total = await engine.queue.list_jobs(
            page, size,
            status=status.value if status else None,
            job_type=type.value if type else None,
            space_id=space_id,
            schedule_id=schedule_id,
        )
        return JobListResponse(
            jobs=[JobResponse.model_validate(job) for job in jobs],
            total=total,
            page=page,
            size=size
        )
    except Exception as e:
        logger.error(f"Error listing jobs: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while listing jobs"
        )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: int,
    engine: JobEngine = Depends(get_engine)
) -> JobResponse:
    """Get job details."""
    try:
        return JobResponse.model_validate(await engine.queue.get(job_id))
    except JobEngineError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error getting job {job_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while getting job"
        )


@router.post("/jobs/{job_id}/requeue", response_model=JobQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
async def requeue_job(
    job_id: int,
    engine: JobEngine = Depends(get_engine)
) -> JobQueuedResponse:
    """
    Requeue a failed job.

    Creates a new job row with the attempt count incremented, up to the
    configured ceiling.
    """
    try:
        new_job_id = await engine.queue.requeue_failed(job_id)
        return JobQueuedResponse(message=f"Job {job_id} requeued", job_id=new_job_id)
    except JobEngineError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error requeuing job {job_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while requeuing job"
        )
