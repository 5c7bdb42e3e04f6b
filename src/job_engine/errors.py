"""Exception hierarchy for the job engine."""

from typing import Optional


class JobEngineError(Exception):
    """Base class for every error raised by the engine."""


class DuplicateActiveJob(JobEngineError):
    """A job for the same (type, resource_id) is already pending or processing."""

    def __init__(self, job_type: str, resource_id: str, existing_job_id: Optional[int] = None):
        self.job_type = job_type
        self.resource_id = resource_id
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Job of type '{job_type}' for resource '{resource_id}' is already active"
            + (f" (job {existing_job_id})" if existing_job_id is not None else "")
        )


class JobNotFound(JobEngineError):
    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Job with id {job_id} not found")


class ScheduleNotFound(JobEngineError):
    def __init__(self, schedule_id: int):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule with id {schedule_id} not found")


class AlertNotFound(JobEngineError):
    def __init__(self, alert_id: int):
        self.alert_id = alert_id
        super().__init__(f"Alert with id {alert_id} not found")


class InvalidJobTransition(JobEngineError):
    def __init__(self, job_id: int, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id} cannot move from '{current}' to '{requested}'")


class RequeueLimitReached(JobEngineError):
    def __init__(self, job_id: int, attempt: int, ceiling: int):
        self.job_id = job_id
        self.attempt = attempt
        self.ceiling = ceiling
        super().__init__(f"Job {job_id} is at attempt {attempt}; requeue ceiling is {ceiling}")


class InvalidRecurrenceRule(JobEngineError):
    def __init__(self, rule: str):
        self.rule = rule
        super().__init__(
            f"Invalid recurrence rule '{rule}'. Use seconds, an interval like '5m', "
            "a cron expression or one of HOURLY, DAILY, WEEKLY, MANUAL."
        )


class ExecutorError(JobEngineError):
    """Raised by domain executors. ``status_code`` feeds retry classification."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientExecutorError(ExecutorError):
    """Always retryable, whatever the status code."""


class ValidationFailure(ExecutorError):
    """Input rejected by the executor. Never retried."""


class AuthorizationFailure(ExecutorError):
    """Credentials rejected by the external system. Never retried."""


class UnknownJobType(ExecutorError):
    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No executor registered for job type '{job_type}'")
