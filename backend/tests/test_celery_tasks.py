import asyncio
import uuid
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import Settings
from db.repositories import utc_now
from db.session import Base
from workers.scheduler import execute_job, run_due_schedules, run_now

TENANT_ID = "00000000-0000-0000-0000-000000000101"


def _setup_db(tmp_path, monkeypatch, **settings_overrides):
    """File-backed SQLite with one tenant; the tasks build their own engine on it."""
    from db.models import Tenant

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}"
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            db.add(Tenant(tenant_id=uuid.UUID(TENANT_ID), name="Task Tenant", email="tasks@example.com"))
            await db.commit()

    asyncio.run(_seed())

    settings = Settings(database_url=db_url, publish_notifications=False, **settings_overrides)
    monkeypatch.setattr("core.config.get_settings", lambda: settings)

    dispatched: list[tuple[str, dict]] = []

    def _capture_send_task(task_name: str, kwargs: dict):
        dispatched.append((task_name, kwargs))

    monkeypatch.setattr("workers.scheduler.celery_app.send_task", _capture_send_task)
    return engine, session_factory, dispatched


def _fetch(engine, session_factory, model, **filters):
    async def _query():
        async with session_factory() as db:
            result = await db.execute(select(model).filter_by(**filters))
            return list(result.scalars().all())

    return asyncio.run(_query())


def test_run_due_schedules_fans_out_due_jobs(tmp_path, monkeypatch):
    from db.models import SyncJob, SyncSchedule

    engine, session_factory, dispatched = _setup_db(tmp_path, monkeypatch, scheduler_dispatch_mode="celery")

    async def _add_schedules() -> None:
        now = utc_now()
        async with session_factory() as db:
            for name, next_run in (("due", now - timedelta(minutes=1)), ("later", now + timedelta(hours=1))):
                db.add(
                    SyncSchedule(
                        tenant_id=uuid.UUID(TENANT_ID),
                        name=name,
                        job_type="order_monitor",
                        platform="shopee",
                        interval_minutes=5,
                        next_run=next_run,
                    )
                )
            await db.commit()

    asyncio.run(_add_schedules())

    result = run_due_schedules.run()
    assert result["status"] == "success"
    assert result["schedules_due"] == 1
    assert result["jobs_created"] == 1
    assert result["jobs_dispatched"] == 1

    jobs = _fetch(engine, session_factory, SyncJob)
    assert len(jobs) == 1
    assert jobs[0].status == "pending"
    assert dispatched == [("workers.scheduler.execute_job", {"job_id": str(jobs[0].job_id)})]

    asyncio.run(engine.dispose())


def test_execute_job_skips_unknown_job(tmp_path, monkeypatch):
    engine, _, _ = _setup_db(tmp_path, monkeypatch)

    job_id = str(uuid.uuid4())
    result = execute_job.run(job_id=job_id)
    assert result == {"status": "skipped", "reason": "job_not_found", "job_id": job_id}

    asyncio.run(engine.dispose())


def test_execute_job_without_credentials_fails_and_alerts(tmp_path, monkeypatch):
    from db.models import Notification, SyncJob

    engine, session_factory, _ = _setup_db(tmp_path, monkeypatch)

    async def _add_job() -> str:
        now = utc_now()
        async with session_factory() as db:
            job = SyncJob(
                tenant_id=uuid.UUID(TENANT_ID),
                job_type="order_monitor",
                platform="shopee",
                status="pending",
                scheduled_at=now,
                created_at=now,
            )
            db.add(job)
            await db.commit()
            return str(job.job_id)

    job_id = asyncio.run(_add_job())

    result = execute_job.run(job_id=job_id)
    assert result["status"] == "failed"
    assert result["failure_reason"] == "auth"
    assert result["retry"] == "not_retryable"

    job = _fetch(engine, session_factory, SyncJob)[0]
    assert job.status == "failed"
    assert [n.type for n in _fetch(engine, session_factory, Notification)] == ["api_error"]

    # a second delivery of the same task is a no-op
    assert execute_job.run(job_id=job_id)["reason"] == "job_failed"

    asyncio.run(engine.dispose())


def test_run_now_queues_and_dispatches(tmp_path, monkeypatch):
    from db.models import SyncJob

    engine, session_factory, dispatched = _setup_db(tmp_path, monkeypatch)

    result = run_now.run(tenant_id=TENANT_ID, job_type="inventory_sync", platform="all")
    assert result["status"] == "queued"
    assert dispatched == [("workers.scheduler.execute_job", {"job_id": result["job_id"]})]

    job = _fetch(engine, session_factory, SyncJob)[0]
    assert str(job.job_id) == result["job_id"]
    assert job.priority == "high"
    assert job.trigger_source == "manual"

    asyncio.run(engine.dispose())


def test_run_now_rejects_unknown_job_type(tmp_path, monkeypatch):
    from db.models import SyncJob

    engine, session_factory, dispatched = _setup_db(tmp_path, monkeypatch)

    result = run_now.run(tenant_id=TENANT_ID, job_type="price_sync", platform="shopee")
    assert result["status"] == "rejected"
    assert result["reason"] == "permanent"
    assert dispatched == []
    assert _fetch(engine, session_factory, SyncJob) == []

    asyncio.run(engine.dispose())


def test_memory_rate_window_spans_tasks(tmp_path, monkeypatch):
    from workers.scheduler import _with_scheduler

    engine, _, _ = _setup_db(tmp_path, monkeypatch, rate_limit_backend="memory", rate_limit_shopee_per_window=1)
    monkeypatch.setattr("workers.scheduler._process_rate_limiter", None)

    async def _spend_one_call(scheduler):
        limiter = scheduler.executor.rate_limiter
        admitted = await limiter.admit(TENANT_ID, "shopee")
        if admitted:
            await limiter.record(TENANT_ID, "shopee")
        return admitted

    assert asyncio.run(_with_scheduler(_spend_one_call)) is True
    # a second task in the same worker process sees the first task's call
    assert asyncio.run(_with_scheduler(_spend_one_call)) is False

    asyncio.run(engine.dispose())
