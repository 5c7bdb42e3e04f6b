from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime

from .models import ChainOn, JobType, ScheduleDomain


class ScheduleCreate(BaseModel):
    """Schema for creating a new schedule."""
    name: str = Field(..., min_length=1, max_length=255, description="Schedule name")
    domain: ScheduleDomain = Field(..., description="data_sync, workflow or notebook")
    space_id: str = Field(..., min_length=1, max_length=100, description="Owning space (tenant)")
    resource_id: str = Field(..., min_length=1, max_length=100, description="Synced model, workflow or notebook id")
    recurrence_rule: str = Field(..., description="Seconds, interval ('10m'), cron ('*/10 * * * *') or HOURLY/DAILY/WEEKLY/MANUAL")
    timezone: str = Field(default="UTC", description="Timezone for cron rules")
    enabled: bool = True
    payload: Dict[str, Any] = Field(default_factory=dict, description="Data handed to the executor")
    retry_policy: Optional[Dict[str, Any]] = Field(None, description="Retry policy overrides")
    trigger_after_schedule_id: Optional[int] = Field(None, description="Run after this schedule finishes")
    chain_on: ChainOn = ChainOn.SUCCESS
    alert_config: Optional[Dict[str, Any]] = Field(None, description="Alert threshold overrides")
    notify_on_failure: bool = True
    notify_on_success: bool = False
    notification_emails: Optional[List[str]] = Field(None, description="Recipients of run notifications")


class ScheduleUpdate(BaseModel):
    """Schema for updating a schedule."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    resource_id: Optional[str] = Field(None, min_length=1, max_length=100)
    recurrence_rule: Optional[str] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None
    payload: Optional[Dict[str, Any]] = None
    retry_policy: Optional[Dict[str, Any]] = None
    trigger_after_schedule_id: Optional[int] = None
    chain_on: Optional[ChainOn] = None
    alert_config: Optional[Dict[str, Any]] = None
    notify_on_failure: Optional[bool] = None
    notify_on_success: Optional[bool] = None
    notification_emails: Optional[List[str]] = None


class ScheduleResponse(BaseModel):
    """Schema for schedule response."""
    id: int
    name: str
    domain: str
    space_id: str
    resource_id: str
    recurrence_rule: str
    timezone: str
    enabled: bool
    payload: Optional[Dict[str, Any]] = None
    retry_policy: Optional[Dict[str, Any]] = None
    trigger_after_schedule_id: Optional[int] = None
    chain_on: str
    alert_config: Optional[Dict[str, Any]] = None
    notify_on_failure: bool
    notify_on_success: bool
    notification_emails: Optional[List[str]] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ScheduleListResponse(BaseModel):
    schedules: list[ScheduleResponse]
    total: int


class DueItemResponse(BaseModel):
    schedule_id: int
    domain: str
    resource_id: str
    space_id: str
    next_run_at: datetime

    class Config:
        from_attributes = True


class JobCreate(BaseModel):
    """Schema for enqueuing a one-off job."""
    type: JobType
    resource_id: str = Field(..., min_length=1, max_length=100)
    space_id: Optional[str] = Field(None, max_length=100)
    payload: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: Optional[Dict[str, Any]] = None


class JobResponse(BaseModel):
    """Schema for job response."""
    id: int
    type: str
    resource_id: str
    space_id: Optional[str] = None
    schedule_id: Optional[int] = None
    status: str
    progress: int
    attempt: int
    retries: int
    payload: Optional[Dict[str, Any]] = None
    requeued_from_id: Optional[int] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    """Schema for job list response."""
    jobs: list[JobResponse]
    total: int
    page: int
    size: int


class JobQueuedResponse(BaseModel):
    message: str
    job_id: int


class CronTickResponse(BaseModel):
    processed: int
    enqueued: int
    skipped: int
    timestamp: datetime


class RunDueResponse(BaseModel):
    enqueued: int
    skipped: int


class ProcessResponse(BaseModel):
    processed: int
    enqueued: int
    timestamp: datetime


class ExecutionRecordResponse(BaseModel):
    """Schema for execution history rows."""
    id: int
    job_id: int
    schedule_id: Optional[int] = None
    space_id: Optional[str] = None
    status: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    attempts: int
    records_fetched: int
    records_processed: int
    records_inserted: int
    records_updated: int
    records_failed: int
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class AlertResponse(BaseModel):
    id: int
    schedule_id: int
    space_id: Optional[str] = None
    alert_type: str
    severity: str
    message: str
    occurrences: int
    acknowledged: bool
    acknowledged_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ScheduleStatsResponse(BaseModel):
    total_schedules: int
    enabled_schedules: int
    executions_24h: int
    successful_24h: int
    failed_24h: int
    success_rate: Optional[float] = None
    avg_duration_ms: Optional[int] = None
    unacknowledged_alerts: int
