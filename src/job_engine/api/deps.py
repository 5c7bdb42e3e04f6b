"""Shared FastAPI dependencies and error mapping for the routers."""

import secrets
from functools import lru_cache
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..db import get_session_factory
from ..errors import (
    AlertNotFound,
    DuplicateActiveJob,
    InvalidJobTransition,
    InvalidRecurrenceRule,
    JobEngineError,
    JobNotFound,
    RequeueLimitReached,
    ScheduleNotFound,
)
from ..service import JobEngine
from ..settings import settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@lru_cache
def _default_engine() -> JobEngine:
    return JobEngine(get_session_factory())


def get_engine() -> JobEngine:
    """Dependency to get the job engine."""
    return _default_engine()


async def require_api_key(api_key: Optional[str] = Security(api_key_header)) -> None:
    """Shared-secret check for the trigger endpoints; open when no key is configured."""
    if not settings.api_key:
        return
    if not api_key or not secrets.compare_digest(api_key, settings.api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )


_STATUS_BY_ERROR = (
    ((JobNotFound, ScheduleNotFound, AlertNotFound), status.HTTP_404_NOT_FOUND),
    ((DuplicateActiveJob, InvalidJobTransition), status.HTTP_409_CONFLICT),
    ((RequeueLimitReached,), status.HTTP_422_UNPROCESSABLE_ENTITY),
    ((InvalidRecurrenceRule,), status.HTTP_400_BAD_REQUEST),
)


def to_http_error(error: JobEngineError) -> HTTPException:
    """Translate a domain error into the matching HTTP error."""
    for error_types, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_types):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
