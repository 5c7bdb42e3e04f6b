"""
Shared fixtures.

Every test gets its own SQLite database file so engine components, which
open a fresh session per operation, see each other's commits exactly as
they would against Postgres.
"""

import random
from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from job_engine.api.deps import get_engine
from job_engine.db import create_session_factory, create_tables
from job_engine.executors import ExecutionResult, ExecutorRegistry
from job_engine.main import app
from job_engine.models import utcnow
from job_engine.retry import RetryPolicy
from job_engine.service import JobEngine


class ScriptedExecutor:
    """Executor that replays a list of outcomes; exceptions are raised, anything else returned."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, context):
        self.calls.append(context)
        outcome = self.outcomes.pop(0) if self.outcomes else ExecutionResult()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that remembers the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory bound to a throwaway SQLite database."""
    factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(factory.kw["bind"])
    yield factory
    await factory.kw["bind"].dispose()


@pytest.fixture
def executors():
    return ExecutorRegistry()


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def retry_policy():
    """Default policy without jitter so delays are exact."""
    return RetryPolicy(jitter=False, rng=random.Random(0))


@pytest.fixture
def engine(session_factory, executors, sleeper, retry_policy):
    return JobEngine(
        session_factory,
        executors=executors,
        retry_policy=retry_policy,
        sleep=sleeper,
        concurrency=1,
    )


@pytest.fixture
async def client(engine):
    """Async test client with the engine dependency pointing at the test database."""
    app.dependency_overrides[get_engine] = lambda: engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_schedule(engine):
    """Create a schedule with sensible defaults; keyword arguments override them."""

    async def _make(**overrides):
        data = {
            "name": "Orders sync",
            "domain": "data_sync",
            "space_id": "space-1",
            "resource_id": "model-1",
            "recurrence_rule": "60",
            "created_at": utcnow() - timedelta(seconds=1),
        }
        data.update(overrides)
        return await engine.registry.create_schedule(**data)

    return _make
