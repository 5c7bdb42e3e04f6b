"""Execution history and alert read surface for the operator UI."""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
import logging

from ..errors import JobEngineError
from ..models import ExecutionStatus
from ..schemas import AlertResponse, ExecutionRecordResponse
from ..service import JobEngine
from .deps import get_engine, to_http_error

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/executions", response_model=list[ExecutionRecordResponse])
async def list_executions(
    schedule_id: Optional[int] = Query(None, description="Filter by schedule"),
    space_id: Optional[str] = Query(None, description="Filter by space"),
    status: Optional[ExecutionStatus] = Query(None, description="success or failed"),
    limit: int = Query(50, ge=1, le=500),
    engine: JobEngine = Depends(get_engine)
) -> list[ExecutionRecordResponse]:
    """Most recent execution records first."""
    try:
        records = await engine.list_executions(
            schedule_id=schedule_id,
            space_id=space_id,
            status=status.value if status else None,
            limit=limit,
        )
        return [ExecutionRecordResponse.model_validate(r) for r in records]
    except Exception as e:
        logger.error(f"Error listing executions: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while listing executions"
        )


@router.get("/alerts", response_model=list[AlertResponse])
async def list_alerts(
    space_id: Optional[str] = Query(None, description="Filter by space"),
    schedule_id: Optional[int] = Query(None, description="Filter by schedule"),
    include_acknowledged: bool = Query(False, description="Also return acknowledged alerts"),
    limit: int = Query(50, ge=1, le=500),
    engine: JobEngine = Depends(get_engine)
) -> list[AlertResponse]:
    """Unacknowledged alerts by default, most recently updated first."""
    try:
        alerts = await engine.alerts.list_alerts(
            space_id=space_id,
            schedule_id=schedule_id,
            include_acknowledged=include_acknowledged,
            limit=limit,
        )
        return [AlertResponse.model_validate(a) for a in alerts]
    except Exception as e:
        logger.error(f"Error listing alerts: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while listing alerts"
        )


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: int,
    engine: JobEngine = Depends(get_engine)
) -> AlertResponse:
    try:
        return AlertResponse.model_validate(await engine.alerts.acknowledge(alert_id))
    except JobEngineError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error acknowledging alert {alert_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while acknowledging alert"
        )
