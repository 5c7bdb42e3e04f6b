"""
Domain executors.

An executor is any async callable taking a ``JobContext`` and returning an
``ExecutionResult``. Executors are looked up by job type in an
``ExecutorRegistry``; the engine never subclasses per domain.

``HttpExecutor`` is the default wiring: it hands the job to the service that
owns the domain (sync service, workflow runner, notebook kernel) over HTTP.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
import logging

import httpx

from .errors import AuthorizationFailure, UnknownJobType, ValidationFailure
from .models import JobType
from .settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Counters reported by an executor for one run."""

    records_fetched: int = 0
    records_processed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_failed: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExecutionResult":
        data = data or {}
        counts = {
            key: int(data.get(key) or 0)
            for key in ("records_fetched", "records_processed", "records_inserted", "records_updated", "records_failed")
        }
        details = {key: value for key, value in data.items() if key not in counts}
        return cls(details=details, **counts)


@dataclass
class JobContext:
    """Everything an executor may know about the job it runs."""

    job_id: int
    job_type: str
    resource_id: str
    space_id: Optional[str]
    schedule_id: Optional[int]
    payload: Dict[str, Any]
    attempt: int  # execution try within this job, starting at 1
    report_progress: Callable[[int], Awaitable[Any]]
    generation: int = 1  # bumped each time a failed job is requeued


Executor = Callable[[JobContext], Awaitable[Optional[ExecutionResult]]]


class ExecutorRegistry:
    """Lookup table from job type to executor."""

    def __init__(self, executors: Optional[Dict[str, Executor]] = None):
        self._executors: Dict[str, Executor] = {}
        for job_type, executor in (executors or {}).items():
            self.register(job_type, executor)

    def register(self, job_type: str, executor: Executor) -> None:
        self._executors[JobType(job_type).value] = executor

    def resolve(self, job_type: str) -> Executor:
        try:
            return self._executors[job_type]
        except KeyError:
            raise UnknownJobType(job_type) from None

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._executors


class HttpExecutor:
    """
    POST the job to a remote endpoint and read counters from the JSON reply.

    Error mapping: 401/403 are authorization failures, 400/422 validation
    failures; other non-2xx replies raise ``httpx.HTTPStatusError`` and are
    classified by status code by the retry policy.
    """

    def __init__(self, url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def __call__(self, context: JobContext) -> ExecutionResult:
        body = {
            "job_id": context.job_id,
            "type": context.job_type,
            "resource_id": context.resource_id,
            "space_id": context.space_id,
            "schedule_id": context.schedule_id,
            "attempt": context.attempt,
            "generation": context.generation,
            "payload": context.payload,
        }
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=body)

        if response.status_code in (401, 403):
            raise AuthorizationFailure(
                f"{context.job_type} executor rejected credentials: {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code in (400, 422):
            raise ValidationFailure(
                f"{context.job_type} executor rejected job: {response.text[:500]}",
                status_code=response.status_code,
            )
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError:
            raise ValidationFailure(f"{context.job_type} executor returned a non-JSON response") from None
        return ExecutionResult.from_dict(data if isinstance(data, dict) else {})


def build_default_registry(endpoints: Optional[Dict[str, str]] = None, timeout: Optional[float] = None) -> ExecutorRegistry:
    """Register an ``HttpExecutor`` for each configured job type."""
    endpoints = settings.executor_endpoints if endpoints is None else endpoints
    timeout = timeout or settings.executor_timeout
    registry = ExecutorRegistry()
    for job_type, url in endpoints.items():
        registry.register(job_type, HttpExecutor(url, timeout=timeout))
        logger.info(f"Registered HTTP executor for {job_type}: {url}")
    return registry
