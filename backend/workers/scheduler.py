"""Celery entry points for the sync scheduler."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()

# memory-backed limiter shared by every task this worker process runs
_process_rate_limiter = None


def _task_rate_limiter(settings):
    """Return ``(limiter, owned)`` for one task.

    In-memory counters live as long as the worker process so the window
    spans tasks. A Redis limiter holds a client bound to the task's event
    loop, so each task builds its own and closes it (``owned``); the
    counters themselves are shared through Redis.
    """
    global _process_rate_limiter
    from sync.rate_limiter import build_rate_limiter

    if settings.rate_limit_backend == "redis":
        return build_rate_limiter(settings), True
    if _process_rate_limiter is None:
        _process_rate_limiter = build_rate_limiter(settings)
    return _process_rate_limiter, False


async def _with_scheduler(fn, dispatch_to_celery: bool = True):
    """Run ``fn(scheduler)`` against a fresh engine and session."""
    from core.config import get_settings
    from sync.scheduler import build_scheduler

    settings = get_settings()
    engine = create_async_engine(settings.database_url)
    rate_limiter, owns_limiter = _task_rate_limiter(settings)
    try:
        async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with async_session() as db:
            scheduler = build_scheduler(
                db,
                rate_limiter,
                settings=settings,
                send_task=celery_app.send_task if dispatch_to_celery else None,
            )
            result = await fn(scheduler)
            await db.commit()
            return result
    finally:
        if owns_limiter:
            await rate_limiter.aclose()
        await engine.dispose()


@celery_app.task(
    name="workers.scheduler.run_due_schedules",
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    acks_late=True,
)
def run_due_schedules(self, tenant_id: str | None = None):
    """One scheduler tick: create jobs for due schedules and dispatch pending jobs."""
    run_id = self.request.id or "manual"

    async def _tick(scheduler):
        summary = await scheduler.run_due_schedules(tenant_id=tenant_id)
        return {
            "status": "success",
            "run_id": run_id,
            "triggered_at": datetime.now(timezone.utc).isoformat(),
            **summary.as_dict(),
        }

    try:
        return asyncio.run(_with_scheduler(_tick))
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.tick_failed", run_id=run_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.scheduler.execute_job",
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    acks_late=True,
)
def execute_job(self, job_id: str):
    """Run one pending job and apply its retry/schedule bookkeeping."""

    async def _execute(scheduler):
        job = await scheduler.repo.get_job(job_id)
        if job is None:
            return {"status": "skipped", "reason": "job_not_found", "job_id": job_id}
        if job.status != "pending":
            return {"status": "skipped", "reason": f"job_{job.status}", "job_id": job_id}

        outcome, decision = await scheduler.process_job(job)
        return {
            "status": outcome.status,
            "job_id": job_id,
            "failure_reason": outcome.failure_reason,
            "retry": decision.retry.action,
            "notifications_created": len(outcome.notifications) + len(decision.notifications),
            **outcome.stats.as_dict(),
        }

    try:
        return asyncio.run(_with_scheduler(_execute, dispatch_to_celery=False))
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.execute_job_failed", job_id=job_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.scheduler.run_now",
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    acks_late=True,
)
def run_now(self, tenant_id: str, job_type: str, platform: str, parameters: dict | None = None):
    """Queue a high-priority job and hand it straight to a worker."""
    from core.errors import SyncError

    async def _queue(scheduler):
        job_id = await scheduler.run_now(tenant_id, job_type, platform, parameters)
        await scheduler.repo.commit()
        celery_app.send_task("workers.scheduler.execute_job", kwargs={"job_id": job_id})
        return {"status": "queued", "job_id": job_id}

    try:
        return asyncio.run(_with_scheduler(_queue))
    except SyncError as exc:
        return {"status": "rejected", "reason": exc.reason, "error": exc.message}
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.run_now_failed", tenant_id=tenant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
