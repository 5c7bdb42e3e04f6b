"""
Retry policy: error classification and exponential backoff.

The policy is a plain value object. Apart from drawing jitter from its own
``random.Random`` it has no side effects, so a seeded policy always yields
the same delays.
"""

import random
import socket
from dataclasses import dataclass, field, fields
from typing import Any, Dict, FrozenSet, Optional

import httpx

from .errors import AuthorizationFailure, TransientExecutorError, ValidationFailure
from .settings import settings

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Raised by the network stack itself; always worth another attempt.
_TRANSIENT_ERRORS = (
    ConnectionResetError,
    ConnectionError,
    TimeoutError,
    socket.gaierror,
    httpx.TimeoutException,
    httpx.NetworkError,
    TransientExecutorError,
)

_TERMINAL_ERRORS = (ValidationFailure, AuthorizationFailure)


def error_status_code(error: BaseException) -> Optional[int]:
    """Extract an HTTP-like status code from an error, if it carries one."""
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    response = getattr(error, "response", None)
    status_code = getattr(response, "status_code", None)
    if isinstance(status_code, int):
        return status_code
    return None


@dataclass
class RetryPolicy:
    """
    Retry policy following the Strategy pattern.

    ``attempt`` numbers are 1-based and refer to the attempt that just failed:
    with ``max_retries=3`` a job is executed at most four times and sleeps
    ``next_delay(1)``, ``next_delay(2)`` and ``next_delay(3)`` in between.
    """

    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    max_retries: int = 3
    jitter: bool = True
    retry_enabled: bool = True
    retryable_status_codes: FrozenSet[int] = DEFAULT_RETRYABLE_STATUS_CODES
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    @classmethod
    def from_settings(cls, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_retries=settings.max_job_retries,
            jitter=settings.retry_jitter,
            retryable_status_codes=frozenset(settings.retryable_status_codes),
            rng=rng or random.Random(),
        )

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Any]], base: "RetryPolicy") -> "RetryPolicy":
        """Overlay a schedule's JSON retry configuration onto ``base``.

        Unknown keys are ignored. The RNG of ``base`` is shared so a seeded
        engine stays deterministic across per-schedule policies.
        """
        if not overrides:
            return base
        known = {f.name for f in fields(cls)} - {"rng"}
        values = {f.name: getattr(base, f.name) for f in fields(cls) if f.name != "rng"}
        for key, value in overrides.items():
            if key not in known or value is None:
                continue
            if key == "retryable_status_codes":
                value = frozenset(int(code) for code in value)
            values[key] = value
        return cls(rng=base.rng, **values)

    def is_retryable(self, error: BaseException) -> bool:
        """Classify an error as transient (True) or terminal (False)."""
        if isinstance(error, _TERMINAL_ERRORS):
            return False
        if isinstance(error, _TRANSIENT_ERRORS):
            return True
        status_code = error_status_code(error)
        if status_code is not None:
            return status_code in self.retryable_status_codes
        return False

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if not self.retry_enabled:
            return False
        return self.is_retryable(error) and attempt <= self.max_retries

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure."""
        exponent = max(attempt - 1, 0)
        delay = min(self.max_delay, self.initial_delay * (self.backoff_multiplier ** exponent))
        if self.jitter:
            delay *= self.rng.uniform(0.5, 1.0)
        return delay
