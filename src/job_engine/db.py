from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from .settings import settings
from .models import Base

# Async engine for FastAPI
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.environment == "development",
    future=True
)

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False
)


def create_session_factory(database_url: str, **engine_kwargs) -> async_sessionmaker:
    """Build an independent engine and session factory.

    Celery tasks run each tick in a fresh event loop, so they use their own
    engine without connection pooling instead of the module-level one.
    """
    engine_kwargs.setdefault("poolclass", NullPool)
    engine = create_async_engine(database_url, future=True, **engine_kwargs)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_session_factory() -> async_sessionmaker:
    """Dependency providing the session factory the engine components share."""
    return AsyncSessionLocal


async def create_tables(engine=None):
    """Create all database tables."""
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
