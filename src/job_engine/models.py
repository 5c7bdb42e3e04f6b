from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean, ForeignKey, Index, text
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from enum import Enum

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ScheduleDomain(str, Enum):
    DATA_SYNC = "data_sync"
    WORKFLOW = "workflow"
    NOTEBOOK = "notebook"


class JobType(str, Enum):
    DATA_SYNC = "data_sync"
    WORKFLOW = "workflow"
    NOTEBOOK = "notebook"
    IMPORT = "import"
    EXPORT = "export"

    @classmethod
    def for_domain(cls, domain: str) -> "JobType":
        return cls(ScheduleDomain(domain).value)


class JobStatus(str, Enum):
    """Job execution status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ChainOn(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ALWAYS = "always"


class AlertType(str, Enum):
    REPEATED_FAILURE = "repeated_failure"
    SLOW_EXECUTION = "slow_execution"
    ERROR_RATE = "error_rate"
    RECORD_COUNT_ANOMALY = "record_count_anomaly"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class TransferStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"


class ScheduleDefinition(Base):
    """Recurring rule for one data-sync, workflow or notebook resource."""

    __tablename__ = "schedules"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    domain = Column(String(20), nullable=False, index=True)
    space_id = Column(String(100), nullable=False, index=True)
    resource_id = Column(String(100), nullable=False, index=True)
    recurrence_rule = Column(String(255), nullable=False)  # seconds, interval, cron or preset
    timezone = Column(String(50), default="UTC", nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    payload = Column(JSON, nullable=True)
    retry_policy = Column(JSON, nullable=True)  # overrides of the default policy
    trigger_after_schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=True, index=True)
    chain_on = Column(String(20), default=ChainOn.SUCCESS.value, nullable=False)
    alert_config = Column(JSON, nullable=True)  # per-schedule alert threshold overrides
    notify_on_failure = Column(Boolean, default=True, nullable=False)
    notify_on_success = Column(Boolean, default=False, nullable=False)
    notification_emails = Column(JSON, nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, nullable=True, index=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Job(Base):
    """One queued unit of work, derived from a schedule or a manual trigger."""

    __tablename__ = "jobs"
    __table_args__ = (
        # At most one pending/processing job per resource and type.
        Index(
            "uq_jobs_active_resource",
            "type",
            "resource_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("ix_jobs_status_created", "status", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(20), nullable=False)
    resource_id = Column(String(100), nullable=False)
    space_id = Column(String(100), nullable=True, index=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=True, index=True)
    status = Column(String(20), default=JobStatus.PENDING.value, nullable=False)
    progress = Column(Integer, default=0, nullable=False)
    attempt = Column(Integer, default=1, nullable=False)  # requeue generation
    retries = Column(Integer, default=0, nullable=False)  # in-place retries of this row
    payload = Column(JSON, nullable=True)
    retry_policy = Column(JSON, nullable=True)
    requeued_from_id = Column(Integer, ForeignKey("jobs.id"), nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    executions = relationship("ExecutionRecord", back_populates="job")


class ExecutionRecord(Base):
    """Immutable audit row for one terminal outcome of a job."""

    __tablename__ = "execution_records"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=True, index=True)
    space_id = Column(String(100), nullable=True, index=True)
    status = Column(String(20), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=False, index=True)
    duration_ms = Column(Integer, default=0, nullable=False)
    attempts = Column(Integer, default=1, nullable=False)
    records_fetched = Column(Integer, default=0, nullable=False)
    records_processed = Column(Integer, default=0, nullable=False)
    records_inserted = Column(Integer, default=0, nullable=False)
    records_updated = Column(Integer, default=0, nullable=False)
    records_failed = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    job = relationship("Job", back_populates="executions")


class Alert(Base):
    """Operator-facing notification raised from execution history."""

    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey("schedules.id"), nullable=False, index=True)
    space_id = Column(String(100), nullable=True, index=True)
    alert_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    occurrences = Column(Integer, default=1, nullable=False)
    acknowledged = Column(Boolean, default=False, nullable=False, index=True)
    acknowledged_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class TransferRequest(Base):
    """One-off import/export request picked up by the manual processing scan."""

    __tablename__ = "transfer_requests"

    id = Column(Integer, primary_key=True, index=True)
    space_id = Column(String(100), nullable=False, index=True)
    direction = Column(String(10), nullable=False)  # import, export
    status = Column(String(20), default=TransferStatus.PENDING.value, nullable=False, index=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
