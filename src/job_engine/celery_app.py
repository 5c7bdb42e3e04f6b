"""
Celery application.

Celery beat plays the role of the outside scheduler: it fires the cron
tick and the stale-job sweep at fixed intervals.
"""

from celery import Celery

from .settings import settings

celery_app = Celery(
    "job_engine",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["job_engine.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "poll-due-jobs": {
            "task": "job_engine.tasks.poll_due_jobs",
            "schedule": float(settings.cron_interval_seconds),
            # Unstarted ticks expire instead of piling up behind a slow one.
            "options": {"expires": float(settings.cron_interval_seconds)},
        },
        "sweep-stale-jobs": {
            "task": "job_engine.tasks.sweep_stale_jobs",
            "schedule": float(settings.sweep_interval_seconds),
        },
    },
)
