"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "marketsync",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.scheduler"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.scheduler.*": {"queue": "sync"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    # One tick a minute; the tick decides which tenant schedules are due.
    beat_schedule={
        "sync-scheduler-tick-1m": {
            "task": "workers.scheduler.run_due_schedules",
            "schedule": crontab(minute="*"),
            "options": {"queue": "sync"},
        },
    },
)
