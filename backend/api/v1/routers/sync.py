"""
Sync Router — schedules, jobs, sync logs, notifications and manual triggers.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_adapter_factory, get_credential_store, get_rate_limiter, get_tenant_db, get_tenant_id
from core.config import get_settings
from core.errors import AuthFailure, PermanentFailure, RateLimited, SyncError
from db.models import PLATFORMS
from db.repositories import SyncRepository, utc_now
from integrations.base import OrderAction
from sync.scheduler import build_scheduler

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ScheduleResponse(BaseModel):
    schedule_id: UUID
    tenant_id: UUID
    name: str
    job_type: str
    platform: str
    interval_minutes: int | None
    cron_expression: str | None
    enabled: bool
    priority: str
    max_retries: int
    last_run: datetime | None
    next_run: datetime
    run_count: int
    failure_count: int
    max_failures: int
    parameters: dict | None

    model_config = {"from_attributes": True}


class ScheduleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    job_type: str
    platform: str = "all"
    interval_minutes: int | None = Field(default=None, ge=1)
    cron_expression: str | None = None
    priority: str = "medium"
    max_retries: int | None = Field(default=None, ge=0, le=10)
    max_failures: int = Field(default=3, ge=1)
    parameters: dict = Field(default_factory=dict)


class JobResponse(BaseModel):
    job_id: UUID
    tenant_id: UUID
    schedule_id: UUID | None
    retry_of_job_id: UUID | None
    job_type: str
    platform: str
    status: str
    priority: str
    trigger_source: str
    scheduled_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    retry_count: int
    max_retries: int
    parameters: dict | None
    result: dict | None
    error_message: str | None
    failure_reason: str | None

    model_config = {"from_attributes": True}


class RunNowRequest(BaseModel):
    job_type: str
    platform: str = "all"
    parameters: dict = Field(default_factory=dict)
    priority: str = "high"


class RunNowResponse(BaseModel):
    job_id: UUID
    status: str


class SyncLogResponse(BaseModel):
    log_id: UUID
    job_id: UUID
    schedule_id: UUID | None
    sync_type: str
    platform: str
    status: str
    items_processed: int
    items_succeeded: int
    items_failed: int
    api_calls_made: int
    changes_detected: int
    notifications_created: int
    error_details: dict | None
    retry_count: int
    started_at: datetime
    completed_at: datetime
    duration_seconds: float

    model_config = {"from_attributes": True}


class NotificationResponse(BaseModel):
    notification_id: UUID
    type: str
    title: str
    message: str
    priority: str
    entity_id: str
    change_kind: str
    is_read: bool
    action_url: str | None
    notification_metadata: dict | None
    created_at: datetime
    expires_at: datetime | None

    model_config = {"from_attributes": True}


class OrderActionRequest(BaseModel):
    action: OrderAction
    tracking_number: str | None = None
    reason: str | None = None


class OrderActionResponse(BaseModel):
    platform: str
    platform_order_id: str
    status: str
    tracking_number: str | None


# ─── Helpers ────────────────────────────────────────────────────────────────


def _scheduler(db, rate_limiter, credential_store, adapter_factory):
    return build_scheduler(
        db,
        rate_limiter,
        settings=get_settings(),
        credential_store=credential_store,
        adapter_factory=adapter_factory,
    )


def _http_error(exc: SyncError) -> HTTPException:
    if isinstance(exc, RateLimited):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=exc.message)
    if isinstance(exc, PermanentFailure):
        return HTTPException(status_code=422, detail=exc.message)
    if isinstance(exc, AuthFailure):
        return HTTPException(status_code=status.HTTP_424_FAILED_DEPENDENCY, detail=exc.message)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)


# ─── Schedules ──────────────────────────────────────────────────────────────


@router.get("/schedules", response_model=list[ScheduleResponse])
async def list_schedules(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    """List the tenant's sync schedules, soonest first."""
    return await SyncRepository(db).list_schedules(tenant_id)


@router.post("/schedules", response_model=ScheduleResponse, status_code=201)
async def create_schedule(
    data: ScheduleCreate,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
    rate_limiter=Depends(get_rate_limiter),
    credential_store=Depends(get_credential_store),
    adapter_factory=Depends(get_adapter_factory),
):
    scheduler = _scheduler(db, rate_limiter, credential_store, adapter_factory)
    try:
        schedule = await scheduler.create_schedule(tenant_id, **data.model_dump())
    except SyncError as exc:
        raise _http_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail=f"Schedule '{data.name}' already exists")
    await db.commit()
    return schedule


@router.post("/schedules/provision", response_model=list[ScheduleResponse])
async def provision_default_schedules(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
    rate_limiter=Depends(get_rate_limiter),
    credential_store=Depends(get_credential_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """Create the default inventory/order/status schedules the tenant lacks."""
    scheduler = _scheduler(db, rate_limiter, credential_store, adapter_factory)
    created = await scheduler.provision_default_schedules(tenant_id)
    await db.commit()
    return created


# ─── Jobs ───────────────────────────────────────────────────────────────────


@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    status: str | None = None,
    job_type: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    return await SyncRepository(db).list_jobs(tenant_id, status=status, job_type=job_type, limit=limit)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    job = await SyncRepository(db).get_job(job_id)
    if job is None or job.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/run-now", response_model=RunNowResponse, status_code=202)
async def run_now(
    data: RunNowRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
    rate_limiter=Depends(get_rate_limiter),
    credential_store=Depends(get_credential_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """Queue a job for the next scheduler tick."""
    scheduler = _scheduler(db, rate_limiter, credential_store, adapter_factory)
    try:
        job_id = await scheduler.run_now(
            tenant_id,
            data.job_type,
            data.platform,
            parameters=data.parameters,
            priority=data.priority,
        )
    except SyncError as exc:
        raise _http_error(exc)
    await db.commit()
    return RunNowResponse(job_id=job_id, status="pending")


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
    rate_limiter=Depends(get_rate_limiter),
    credential_store=Depends(get_credential_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """Cancel a job that has not started yet."""
    repo = SyncRepository(db)
    job = await repo.get_job(job_id)
    if job is None or job.tenant_id != tenant_id:
        raise HTTPException(status_code=404, detail="Job not found")

    scheduler = _scheduler(db, rate_limiter, credential_store, adapter_factory)
    if not await scheduler.cancel_job(job_id):
        raise HTTPException(status_code=409, detail=f"Job is {job.status}; only pending jobs can be cancelled")
    await db.commit()
    return job


@router.post("/tick")
async def run_tick(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
    rate_limiter=Depends(get_rate_limiter),
    credential_store=Depends(get_credential_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """Run one scheduler tick for this tenant only."""
    scheduler = _scheduler(db, rate_limiter, credential_store, adapter_factory)
    summary = await scheduler.run_due_schedules(tenant_id=tenant_id)
    return summary.as_dict()


@router.get("/status")
async def scheduler_status(
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
    rate_limiter=Depends(get_rate_limiter),
    credential_store=Depends(get_credential_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """Job counts (24h), active schedules and common failures (7d)."""
    scheduler = _scheduler(db, rate_limiter, credential_store, adapter_factory)
    return await scheduler.get_scheduler_analytics(tenant_id)


# ─── Logs & Notifications ──────────────────────────────────────────────────


@router.get("/logs", response_model=list[SyncLogResponse])
async def list_sync_logs(
    limit: int = Query(50, ge=1, le=200),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    return await SyncRepository(db).list_sync_logs(tenant_id, limit=limit)


@router.get("/notifications", response_model=list[NotificationResponse])
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    return await SyncRepository(db).list_notifications(tenant_id, unread_only=unread_only, limit=limit)


@router.post("/notifications/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: UUID,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
):
    notification = await SyncRepository(db).mark_notification_read(tenant_id, notification_id, utc_now())
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return notification


# ─── Order actions ─────────────────────────────────────────────────────────


@router.post("/orders/{platform}/{platform_order_id}/actions", response_model=OrderActionResponse)
async def apply_order_action(
    platform: str,
    platform_order_id: str,
    data: OrderActionRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_tenant_db),
    rate_limiter=Depends(get_rate_limiter),
    credential_store=Depends(get_credential_store),
    adapter_factory=Depends(get_adapter_factory),
):
    """Ship, cancel, refund or confirm delivery of an order on its marketplace."""
    if platform not in PLATFORMS or await SyncRepository(db).get_order(tenant_id, platform, platform_order_id) is None:
        raise HTTPException(status_code=404, detail="Order not found")

    scheduler = _scheduler(db, rate_limiter, credential_store, adapter_factory)
    extra = {k: v for k, v in {"tracking_number": data.tracking_number, "reason": data.reason}.items() if v}
    try:
        order = await scheduler.executor.push_order_action(
            tenant_id,
            platform,
            platform_order_id,
            data.action,
            extra=extra or None,
        )
    except SyncError as exc:
        raise _http_error(exc)
    await db.commit()
    return OrderActionResponse(
        platform=order.platform,
        platform_order_id=order.platform_order_id,
        status=order.status,
        tracking_number=order.tracking_number,
    )
