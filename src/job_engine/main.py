"""FastAPI application: routers, lifespan and health endpoints."""

from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api.deps import get_engine, to_http_error
from .api.jobs import router as jobs_router
from .api.monitoring import router as monitoring_router
from .api.schedules import router as schedules_router
from .db import async_engine, create_tables
from .errors import JobEngineError
from .service import JobEngine
from .settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Job Engine ({settings.environment})")
    await create_tables()
    yield
    await async_engine.dispose()
    logger.info("Job Engine stopped")


app = FastAPI(
    title="Job Engine",
    description="Recurring job scheduling and execution for data syncs, workflows and notebooks",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

for router, tag in ((jobs_router, "jobs"), (schedules_router, "schedules"), (monitoring_router, "monitoring")):
    app.include_router(router, prefix="/api/v1", tags=[tag])


@app.exception_handler(JobEngineError)
async def job_engine_error_handler(request: Request, exc: JobEngineError) -> JSONResponse:
    """Domain errors that escape a route still get their mapped status code."""
    error = to_http_error(exc)
    return JSONResponse(status_code=error.status_code, content={"detail": error.detail})


@app.get("/")
async def root():
    return {
        "message": "Job Engine API",
        "version": app.version,
        "docs": app.docs_url,
        "redoc": app.redoc_url
    }


@app.get("/health")
async def health_check(engine: JobEngine = Depends(get_engine)):
    """Liveness plus a round trip to the database."""
    try:
        async with engine.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": "job-engine", "database": "unreachable"}
        )
    return {"status": "healthy", "service": "job-engine", "database": "connected"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "job_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development"
    )
