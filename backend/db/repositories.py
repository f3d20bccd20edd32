"""
Typed repository for the sync core.

One method per query shape the scheduler, executor and alert emitter need,
so those components can be exercised against any session (SQLite in tests,
PostgreSQL in production) without building queries themselves.

Writes are scoped to one row's primary key. Status changes that must not
race (claiming a pending job, cancelling it) are conditional UPDATEs on the
current status.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    Notification,
    Order,
    Product,
    SchedulerLog,
    SyncJob,
    SyncLog,
    SyncSchedule,
)
from integrations.base import RemoteOrder

_PRIORITY_RANK = case(
    (SyncJob.priority == "urgent", 0),
    (SyncJob.priority == "high", 1),
    (SyncJob.priority == "medium", 2),
    else_=3,
)


def _uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class SyncRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    def savepoint(self):
        """Nested transaction; on error only the writes made inside it are undone."""
        return self.db.begin_nested()

    # ── Schedules ────────────────────────────────────────────────────────

    async def due_schedules(self, now: datetime, tenant_id: Any | None = None) -> list[SyncSchedule]:
        query = select(SyncSchedule).where(
            SyncSchedule.enabled.is_(True),
            SyncSchedule.next_run <= now,
        )
        if tenant_id is not None:
            query = query.where(SyncSchedule.tenant_id == _uuid(tenant_id))
        result = await self.db.execute(query.order_by(SyncSchedule.next_run))
        return list(result.scalars().all())

    async def get_schedule(self, schedule_id: Any) -> SyncSchedule | None:
        return await self.db.get(SyncSchedule, _uuid(schedule_id))

    async def list_schedules(self, tenant_id: Any) -> list[SyncSchedule]:
        result = await self.db.execute(
            select(SyncSchedule).where(SyncSchedule.tenant_id == _uuid(tenant_id)).order_by(SyncSchedule.next_run)
        )
        return list(result.scalars().all())

    async def add_schedule(self, schedule: SyncSchedule) -> SyncSchedule:
        self.db.add(schedule)
        await self.db.flush()
        return schedule

    async def mark_schedule_dispatched(self, schedule: SyncSchedule, now: datetime, next_run: datetime) -> None:
        schedule.last_run = now
        schedule.next_run = next_run
        schedule.run_count = (schedule.run_count or 0) + 1
        schedule.updated_at = now
        await self.db.flush()

    async def record_schedule_outcome(self, schedule_id: Any, succeeded: bool, now: datetime) -> SyncSchedule | None:
        schedule = await self.get_schedule(schedule_id)
        if schedule is None:
            return None
        schedule.failure_count = 0 if succeeded else (schedule.failure_count or 0) + 1
        schedule.updated_at = now
        await self.db.flush()
        return schedule

    async def disable_schedule(self, schedule: SyncSchedule, now: datetime) -> None:
        schedule.enabled = False
        schedule.updated_at = now
        await self.db.flush()

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def create_job(self, **fields: Any) -> SyncJob:
        job = SyncJob(**fields)
        self.db.add(job)
        await self.db.flush()
        return job

    async def get_job(self, job_id: Any) -> SyncJob | None:
        return await self.db.get(SyncJob, _uuid(job_id))

    async def pending_jobs_due(self, now: datetime, tenant_id: Any | None = None, limit: int = 100) -> list[SyncJob]:
        query = select(SyncJob).where(SyncJob.status == "pending", SyncJob.scheduled_at <= now)
        if tenant_id is not None:
            query = query.where(SyncJob.tenant_id == _uuid(tenant_id))
        result = await self.db.execute(query.order_by(_PRIORITY_RANK, SyncJob.scheduled_at).limit(limit))
        return list(result.scalars().all())

    async def list_jobs(
        self,
        tenant_id: Any,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        query = select(SyncJob).where(SyncJob.tenant_id == _uuid(tenant_id))
        if status:
            query = query.where(SyncJob.status == status)
        if job_type:
            query = query.where(SyncJob.job_type == job_type)
        result = await self.db.execute(query.order_by(SyncJob.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def claim_job(self, job: SyncJob, now: datetime) -> bool:
        """pending -> running. False when another worker got there first."""
        result = await self.db.execute(
            update(SyncJob)
            .where(SyncJob.job_id == job.job_id, SyncJob.status == "pending")
            .values(status="running", started_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        job.status = "running"
        job.started_at = now
        await self.db.flush()
        return True

    async def finish_job(
        self,
        job: SyncJob,
        status: str,
        now: datetime,
        result: dict | None = None,
        error_message: str | None = None,
        failure_reason: str | None = None,
    ) -> None:
        if job.status != "running":
            raise ValueError(f"Cannot move job {job.job_id} from {job.status} to {status}")
        job.status = status
        job.completed_at = now
        job.result = result
        job.error_message = error_message
        job.failure_reason = failure_reason
        await self.db.flush()

    async def cancel_job(self, job_id: Any, now: datetime) -> bool:
        """pending -> cancelled. Running and terminal jobs are left alone."""
        result = await self.db.execute(
            update(SyncJob)
            .where(SyncJob.job_id == _uuid(job_id), SyncJob.status == "pending")
            .values(status="cancelled", completed_at=now)
            .execution_options(synchronize_session=False)
        )
        cancelled = result.rowcount == 1
        if cancelled:
            job = await self.get_job(job_id)
            if job is not None:
                await self.db.refresh(job)
        return cancelled

    async def retry_exists(self, job_id: Any) -> bool:
        result = await self.db.execute(
            select(func.count()).select_from(SyncJob).where(SyncJob.retry_of_job_id == _uuid(job_id))
        )
        return (result.scalar() or 0) > 0

    async def job_stats_since(self, tenant_id: Any, since: datetime) -> list[tuple[str, str, str]]:
        result = await self.db.execute(
            select(SyncJob.status, SyncJob.job_type, SyncJob.platform).where(
                SyncJob.tenant_id == _uuid(tenant_id),
                SyncJob.scheduled_at >= since,
            )
        )
        return [(row.status, row.job_type, row.platform) for row in result.all()]

    # ── Sync logs ────────────────────────────────────────────────────────

    async def add_sync_log(self, entry: SyncLog) -> SyncLog:
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_sync_logs(self, tenant_id: Any, limit: int = 50) -> list[SyncLog]:
        result = await self.db.execute(
            select(SyncLog)
            .where(SyncLog.tenant_id == _uuid(tenant_id))
            .order_by(SyncLog.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    # ── Orders ───────────────────────────────────────────────────────────

    async def load_orders(self, tenant_id: Any, platforms: Iterable[str]) -> list[Order]:
        result = await self.db.execute(
            select(Order).where(
                Order.tenant_id == _uuid(tenant_id),
                Order.platform.in_(list(platforms)),
            )
        )
        return list(result.scalars().all())

    async def get_order(self, tenant_id: Any, platform: str, platform_order_id: str) -> Order | None:
        result = await self.db.execute(
            select(Order).where(
                Order.tenant_id == _uuid(tenant_id),
                Order.platform == platform,
                Order.platform_order_id == platform_order_id,
            )
        )
        return result.scalar_one_or_none()

    async def set_order_status(self, order: Order, status: str, now: datetime, tracking_number: str | None = None) -> None:
        order.status = status
        if tracking_number:
            order.tracking_number = tracking_number
        order.updated_at = now
        await self.db.flush()

    async def upsert_orders(
        self,
        tenant_id: Any,
        remote_orders: Iterable[RemoteOrder],
        now: datetime,
        insert_new: bool = True,
    ) -> int:
        """Insert or update orders keyed by (tenant, platform, platform_order_id)."""
        remote_orders = list(remote_orders)
        if not remote_orders:
            return 0
        existing = {
            (o.platform, o.platform_order_id): o
            for o in await self.load_orders(tenant_id, {r.platform for r in remote_orders})
        }

        written = 0
        for remote in remote_orders:
            row = existing.get((remote.platform, remote.platform_order_id))
            if row is None:
                if not insert_new:
                    continue
                row = Order(
                    tenant_id=_uuid(tenant_id),
                    platform=remote.platform,
                    platform_order_id=remote.platform_order_id,
                    created_at=now,
                )
                self.db.add(row)
                existing[(remote.platform, remote.platform_order_id)] = row
            row.customer_name = remote.customer_name
            row.customer_email = remote.customer_email
            row.total_amount = remote.total_amount
            row.currency = remote.currency
            row.status = remote.status
            row.tracking_number = remote.tracking_number
            row.payment_method = remote.payment_method
            row.items = remote.items_payload()
            row.order_date = remote.created_at
            row.remote_updated_at = remote.updated_at
            row.last_synced_at = now
            row.updated_at = now
            written += 1

        await self.db.flush()
        return written

    # ── Products ─────────────────────────────────────────────────────────

    async def load_products(
        self,
        tenant_id: Any,
        product_ids: Iterable[Any] | None = None,
        low_stock_only: bool = False,
    ) -> list[Product]:
        query = select(Product).where(
            Product.tenant_id == _uuid(tenant_id),
            Product.status == "active",
            Product.sync_enabled.is_(True),
        )
        ids = [_uuid(pid) for pid in product_ids or []]
        if ids:
            query = query.where(Product.product_id.in_(ids))
        if low_stock_only:
            query = query.where(Product.stock_quantity <= Product.low_stock_threshold)
        result = await self.db.execute(query.order_by(Product.sku))
        return list(result.scalars().all())

    async def update_product_stock(self, product: Product, quantity: int, now: datetime) -> None:
        product.stock_quantity = max(0, int(quantity))
        product.last_synced_at = now
        product.updated_at = now
        await self.db.flush()

    # ── Notifications ────────────────────────────────────────────────────

    def _active_notifications(self, tenant_id: Any, entity_id: str, change_kind: str, now: datetime):
        return select(Notification).where(
            Notification.tenant_id == _uuid(tenant_id),
            Notification.entity_id == entity_id,
            Notification.change_kind == change_kind,
            Notification.is_read.is_(False),
            Notification.is_archived.is_(False),
            (Notification.expires_at.is_(None)) | (Notification.expires_at > now),
        )

    async def find_active_notification(
        self,
        tenant_id: Any,
        entity_id: str,
        change_kind: str,
        now: datetime,
    ) -> Notification | None:
        result = await self.db.execute(
            self._active_notifications(tenant_id, entity_id, change_kind, now)
            .order_by(Notification.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_notification(self, notification: Notification) -> Notification:
        self.db.add(notification)
        await self.db.flush()
        return notification

    async def refresh_notification(self, existing: Notification, replacement: Notification) -> Notification:
        """Overwrite an active notification with newer content for the same entity."""
        existing.title = replacement.title
        existing.message = replacement.message
        existing.priority = replacement.priority
        existing.action_url = replacement.action_url
        existing.notification_metadata = replacement.notification_metadata
        existing.created_at = replacement.created_at
        existing.expires_at = replacement.expires_at
        await self.db.flush()
        return existing

    async def archive_active_notifications(self, tenant_id: Any, entity_id: str, change_kind: str, now: datetime) -> int:
        result = await self.db.execute(self._active_notifications(tenant_id, entity_id, change_kind, now))
        rows = list(result.scalars().all())
        for row in rows:
            row.is_archived = True
        await self.db.flush()
        return len(rows)

    async def list_notifications(self, tenant_id: Any, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        query = select(Notification).where(
            Notification.tenant_id == _uuid(tenant_id),
            Notification.is_archived.is_(False),
        )
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        result = await self.db.execute(query.order_by(Notification.created_at.desc()).limit(limit))
        return list(result.scalars().all())

    async def mark_notification_read(self, tenant_id: Any, notification_id: Any, now: datetime) -> Notification | None:
        notification = await self.db.get(Notification, _uuid(notification_id))
        if notification is None or notification.tenant_id != _uuid(tenant_id):
            return None
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = now
            await self.db.flush()
        return notification

    # ── Scheduler audit ──────────────────────────────────────────────────

    async def log_operation(
        self,
        operation: str,
        message: str,
        tenant_id: Any | None = None,
        job_id: Any | None = None,
        metadata: dict | None = None,
    ) -> None:
        self.db.add(
            SchedulerLog(
                tenant_id=_uuid(tenant_id) if tenant_id is not None else None,
                operation=operation,
                job_id=_uuid(job_id) if job_id is not None else None,
                message=message,
                log_metadata=metadata or {},
                timestamp=datetime.utcnow(),
            )
        )
        await self.db.flush()

    async def operations_since(self, operation: str, since: datetime, tenant_id: Any | None = None) -> list[SchedulerLog]:
        query = select(SchedulerLog).where(SchedulerLog.operation == operation, SchedulerLog.timestamp >= since)
        if tenant_id is not None:
            query = query.where(SchedulerLog.tenant_id == _uuid(tenant_id))
        result = await self.db.execute(query.order_by(SchedulerLog.timestamp))
        return list(result.scalars().all())


def utc_now() -> datetime:
    """Naive UTC, matching the DateTime columns."""
    return datetime.utcnow()


def expiry_from(now: datetime, ttl_days: int) -> datetime | None:
    return now + timedelta(days=ttl_days) if ttl_days > 0 else None
