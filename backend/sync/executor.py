"""
Sync Job Executor — runs one job end to end.

Per job:
  1. pending -> running (conditional, so two workers never run the same row)
  2. resolve platforms and credentials, open one adapter per platform
  3. every HTTP request an adapter makes passes the rate limiter gate
     (admit, request, record), so each page of a listing counts once
  4. reconcile fresh remote state against the last known local state
  5. emit notifications for the resulting changes
  6. write exactly one SyncLog row
  7. running -> completed | failed

Nothing escapes ``execute``: SyncError subclasses become the job's
failure_reason, anything else is recorded as ``unexpected_error``. Whether
a failed job is retried is the retry coordinator's call.

Entity batches (inventory pushes) run concurrently in fixed-size chunks with
a pause between chunks so one job cannot burst past the platform ceiling.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from pydantic import BaseModel, Field, ValidationError

from alerts.engine import AlertPolicy, emit_auth_failure, emit_changes, publish_notifications
from core.config import Settings, get_settings
from core.errors import (
    AuthFailure,
    MissingCredential,
    PermanentFailure,
    RateLimited,
    SyncError,
)
from db.models import Notification, Order, Product, SyncJob, SyncLog
from db.repositories import SyncRepository, utc_now
from integrations.base import (
    ALL_PLATFORMS,
    OrderAction,
    PlatformAdapter,
    RemoteOrder,
    RemoteProduct,
    expand_platforms,
    get_adapter,
)
from integrations.credentials import CredentialStore
from sync.rate_limiter import PlatformCallGate, RateLimiter
from sync.reconciliation import (
    OrderSnapshot,
    ProductSnapshot,
    ReconciliationResult,
    Snapshot,
    dedupe_latest,
    order_entity_id,
    reconcile_with_diagnostics,
)

logger = structlog.get_logger()

T = TypeVar("T")

AdapterFactory = Callable[..., PlatformAdapter]

ORDER_ACTION_STATUS = {
    OrderAction.SHIP: "shipped",
    OrderAction.CANCEL: "cancelled",
    OrderAction.REFUND: "refunded",
    OrderAction.DELIVER: "delivered",
}


# ─── Job parameters ──────────────────────────────────────────────────────


class InventorySyncParams(BaseModel):
    product_ids: list[uuid.UUID] = Field(default_factory=list)
    low_stock_only: bool = False
    force_sync: bool = False


class OrderMonitorParams(BaseModel):
    lookback_minutes: int | None = Field(default=None, ge=1)


class StatusSyncParams(BaseModel):
    lookback_minutes: int = Field(default=24 * 60, ge=1)


JOB_PARAMS: dict[str, type[BaseModel]] = {
    "inventory_sync": InventorySyncParams,
    "order_monitor": OrderMonitorParams,
    "status_sync": StatusSyncParams,
}


def parse_job_params(job_type: str, parameters: dict | None) -> BaseModel:
    """Validate raw job parameters into the model for ``job_type``."""
    model = JOB_PARAMS.get(job_type)
    if model is None:
        raise PermanentFailure(f"Unknown job type: {job_type}")
    try:
        return model.model_validate(parameters or {})
    except ValidationError as exc:
        raise PermanentFailure(
            f"Invalid parameters for {job_type}",
            details={"errors": exc.errors(include_url=False)},
        ) from exc


# ─── Outcome records ─────────────────────────────────────────────────────


@dataclass
class SyncStats:
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    api_calls_made: int = 0
    changes_detected: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    skipped_platforms: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "items_processed": self.items_processed,
            "items_succeeded": self.items_succeeded,
            "items_failed": self.items_failed,
            "api_calls_made": self.api_calls_made,
            "changes_detected": self.changes_detected,
            "skipped_platforms": list(self.skipped_platforms),
        }


@dataclass
class JobOutcome:
    job_id: str
    status: str
    failure_reason: str | None = None
    error_message: str | None = None
    stats: SyncStats = field(default_factory=SyncStats)
    notifications: list[Notification] = field(default_factory=list)
    claimed: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


@dataclass
class _JobContext:
    job: SyncJob
    now: datetime
    stats: SyncStats = field(default_factory=SyncStats)
    notifications: list[Notification] = field(default_factory=list)
    changes_by_kind: dict[str, int] = field(default_factory=dict)


def chunked(items: list[T], size: int) -> list[list[T]]:
    size = max(1, size)
    return [items[i : i + size] for i in range(0, len(items), size)]


# ─── Executor ────────────────────────────────────────────────────────────


class SyncJobExecutor:
    def __init__(
        self,
        repo: SyncRepository,
        credential_store: CredentialStore,
        rate_limiter: RateLimiter,
        adapter_factory: AdapterFactory = get_adapter,
        alert_policy: AlertPolicy | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.repo = repo
        self.credential_store = credential_store
        self.rate_limiter = rate_limiter
        self.adapter_factory = adapter_factory
        self.alert_policy = alert_policy or AlertPolicy.from_settings(self.settings)
        self.sleep = sleep
        self._handlers = {
            "inventory_sync": self._run_inventory_sync,
            "order_monitor": self._run_order_monitor,
            "status_sync": self._run_status_sync,
        }

    async def execute(self, job: SyncJob, now: datetime | None = None) -> JobOutcome:
        """Run one pending job to a terminal status. Never raises for job failures."""
        started_at = now or utc_now()
        t0 = time.monotonic()
        log = logger.bind(
            tenant_id=str(job.tenant_id),
            job_id=str(job.job_id),
            job_type=job.job_type,
            platform=job.platform,
        )

        if not await self.repo.claim_job(job, started_at):
            log.info("executor.job.not_claimed", status=job.status)
            return JobOutcome(job_id=str(job.job_id), status=job.status, claimed=False)

        log.info("executor.job.started", trigger_source=job.trigger_source, retry_count=job.retry_count)
        ctx = _JobContext(job=job, now=started_at)
        failure: SyncError | None = None

        try:
            handler = self._handlers.get(job.job_type)
            if handler is None:
                raise PermanentFailure(f"Unknown job type: {job.job_type}")
            params = parse_job_params(job.job_type, job.parameters)
            await handler(ctx, params)
        except SyncError as exc:
            failure = exc
        except Exception as exc:  # noqa: BLE001
            log.error("executor.job.unexpected_error", error=str(exc), exc_info=True)
            failure = SyncError(f"Unexpected error: {exc}", platform=job.platform)

        if isinstance(failure, AuthFailure):
            notification = await emit_auth_failure(
                self.repo,
                job.tenant_id,
                failure.platform or job.platform,
                failure.message,
                policy=self.alert_policy,
                now=started_at,
            )
            if notification is not None:
                ctx.notifications.append(notification)

        completed_at = started_at + timedelta(seconds=time.monotonic() - t0)
        outcome = await self._finish(ctx, failure, completed_at)

        if failure is None:
            log.info("executor.job.completed", **outcome.stats.as_dict(), notifications=len(outcome.notifications))
        else:
            log.warning("executor.job.failed", reason=failure.reason, error=failure.message)

        if outcome.notifications and self.settings.publish_notifications:
            await publish_notifications(outcome.notifications, self.settings.redis_url)
        return outcome

    async def _finish(self, ctx: _JobContext, failure: SyncError | None, completed_at: datetime) -> JobOutcome:
        job, stats = ctx.job, ctx.stats
        if failure is not None:
            stats.errors.append(failure.to_dict())

        status = "failed" if failure is not None else "completed"
        if failure is not None:
            log_status = "failed"
        elif stats.items_failed:
            log_status = "partial"
        else:
            log_status = "success"

        result = {**stats.as_dict(), "changes": dict(ctx.changes_by_kind), "notifications_created": len(ctx.notifications)}
        await self.repo.finish_job(
            job,
            status,
            completed_at,
            result=result,
            error_message=failure.message if failure is not None else None,
            failure_reason=failure.reason if failure is not None else None,
        )
        await self.repo.add_sync_log(
            SyncLog(
                tenant_id=job.tenant_id,
                job_id=job.job_id,
                schedule_id=job.schedule_id,
                sync_type=job.job_type,
                platform=job.platform,
                status=log_status,
                items_processed=stats.items_processed,
                items_succeeded=stats.items_succeeded,
                items_failed=stats.items_failed,
                api_calls_made=stats.api_calls_made,
                changes_detected=stats.changes_detected,
                notifications_created=len(ctx.notifications),
                error_details={"errors": stats.errors} if stats.errors else None,
                retry_count=job.retry_count,
                started_at=ctx.now,
                completed_at=completed_at,
                duration_seconds=(completed_at - ctx.now).total_seconds(),
            )
        )
        await self.repo.log_operation(
            "job_completed" if failure is None else "job_failed",
            failure.message if failure is not None else f"{job.job_type} completed",
            tenant_id=job.tenant_id,
            job_id=job.job_id,
            metadata={"failure_reason": failure.reason} if failure is not None else result,
        )
        return JobOutcome(
            job_id=str(job.job_id),
            status=status,
            failure_reason=failure.reason if failure is not None else None,
            error_message=failure.message if failure is not None else None,
            stats=stats,
            notifications=list(ctx.notifications),
        )

    # ── Platform plumbing ────────────────────────────────────────────────

    def _gate(self, stats: SyncStats, tenant_id: str, platform: str) -> PlatformCallGate:
        def _count() -> None:
            stats.api_calls_made += 1

        return PlatformCallGate(self.rate_limiter, tenant_id, platform, on_record=_count)

    async def _open_adapters(self, ctx: _JobContext, stack: contextlib.AsyncExitStack) -> dict[str, PlatformAdapter]:
        """Adapters for every platform the job targets that the tenant has connected."""
        job = ctx.job
        adapters: dict[str, PlatformAdapter] = {}
        for platform in expand_platforms(job.platform):
            try:
                credential = await self.credential_store.get_credential(str(job.tenant_id), platform)
            except MissingCredential:
                if job.platform != ALL_PLATFORMS:
                    raise
                ctx.stats.skipped_platforms.append(platform)
                logger.info("executor.platform_not_connected", tenant_id=str(job.tenant_id), platform=platform)
                continue
            adapter = self.adapter_factory(platform, str(job.tenant_id), credential)
            adapter.call_gate = self._gate(ctx.stats, str(job.tenant_id), platform)
            adapters[platform] = await stack.enter_async_context(adapter)

        if not adapters:
            raise MissingCredential("No connected marketplace for tenant", platform=job.platform)
        return adapters

    async def _in_chunks(self, items: list[T], fn: Callable[[T], Awaitable[Any]]) -> list[Any]:
        """Run ``fn`` over ``items`` chunk by chunk; exceptions are returned, not raised."""
        results: list[Any] = []
        chunks = chunked(items, self.settings.sync_batch_size)
        for index, chunk in enumerate(chunks):
            results.extend(await asyncio.gather(*(fn(item) for item in chunk), return_exceptions=True))
            if index < len(chunks) - 1:
                await self.sleep(self.settings.sync_batch_pause_seconds)
        return results

    def _record_changes(self, ctx: _JobContext, result: ReconciliationResult) -> None:
        ctx.stats.changes_detected += len(result.changes)
        for change in result.changes:
            ctx.changes_by_kind[change.kind.value] = ctx.changes_by_kind.get(change.kind.value, 0) + 1
        for ambiguity in result.ambiguities:
            logger.warning(
                "reconcile.ambiguous_status",
                tenant_id=str(ctx.job.tenant_id),
                job_id=str(ctx.job.job_id),
                entity_id=ambiguity.entity_id,
                reported_statuses=ambiguity.reported_statuses,
                chosen_status=ambiguity.chosen_status,
            )

    async def _emit(self, ctx: _JobContext, result: ReconciliationResult) -> None:
        created = await emit_changes(
            self.repo,
            ctx.job.tenant_id,
            result.changes,
            policy=self.alert_policy,
            now=ctx.now,
        )
        ctx.notifications.extend(created)

    # ── inventory_sync ───────────────────────────────────────────────────

    async def _run_inventory_sync(self, ctx: _JobContext, params: InventorySyncParams) -> None:
        job, stats = ctx.job, ctx.stats
        products = await self.repo.load_products(job.tenant_id, params.product_ids, params.low_stock_only)

        async with contextlib.AsyncExitStack() as stack:
            adapters = await self._open_adapters(ctx, stack)

            listings: dict[str, dict[str, RemoteProduct]] = {}
            for platform, adapter in adapters.items():
                remote = await adapter.fetch_products()
                listings[platform] = {r.listing_id: r for r in remote}

            fresh_stock: dict[str, int] = {}
            reported: dict[str, list[tuple[str, str, int]]] = {}
            for product in products:
                reports = []
                for platform in adapters:
                    listing_id = product.listing_for(platform)
                    remote = listings[platform].get(listing_id) if listing_id else None
                    if remote is not None:
                        reports.append((platform, listing_id, remote.stock_quantity))
                if not reports:
                    continue
                fresh_stock[str(product.product_id)] = min(q for _, _, q in reports)
                reported[str(product.product_id)] = reports

            synced = [p for p in products if str(p.product_id) in fresh_stock]
            stats.items_processed = len(synced)

            result = reconcile_with_diagnostics(
                str(job.tenant_id),
                Snapshot(products=[_product_snapshot(p, p.stock_quantity) for p in synced]),
                Snapshot(products=[_product_snapshot(p, fresh_stock[str(p.product_id)]) for p in synced]),
            )
            self._record_changes(ctx, result)

            pushes = [
                (product, platform, listing_id, fresh_stock[str(product.product_id)])
                for product in synced
                for platform, listing_id, quantity in reported[str(product.product_id)]
                if params.force_sync or quantity != fresh_stock[str(product.product_id)]
            ]

            async def _push(item: tuple[Product, str, str, int]) -> None:
                product, platform, listing_id, quantity = item
                await adapters[platform].push_inventory(listing_id, quantity, sku=product.sku)

            outcomes = await self._in_chunks(pushes, _push)

        failures = [o for o in outcomes if isinstance(o, BaseException)]
        for error in failures:
            if isinstance(error, (RateLimited, AuthFailure)) or not isinstance(error, SyncError):
                raise error
        if pushes and len(failures) == len(pushes):
            raise failures[0]

        failed_products: set[str] = set()
        for (product, platform, listing_id, _), outcome in zip(pushes, outcomes):
            if isinstance(outcome, SyncError):
                failed_products.add(str(product.product_id))
                stats.errors.append({"product_id": str(product.product_id), "listing_id": listing_id, **outcome.to_dict()})

        stats.items_failed = len(failed_products)
        stats.items_succeeded = len(synced) - len(failed_products)

        async with self.repo.savepoint():
            for product in synced:
                await self.repo.update_product_stock(product, fresh_stock[str(product.product_id)], ctx.now)
            await self._emit(ctx, result)

    # ── order_monitor / status_sync ──────────────────────────────────────

    async def _fetch_remote_orders(self, ctx: _JobContext, since: datetime) -> list[RemoteOrder]:
        orders: list[RemoteOrder] = []
        async with contextlib.AsyncExitStack() as stack:
            adapters = await self._open_adapters(ctx, stack)
            for platform, adapter in adapters.items():
                orders.extend(await adapter.fetch_orders(since=since))
        return orders

    async def _reconcile_orders(self, ctx: _JobContext, since: datetime, include_new_orders: bool) -> None:
        job, stats = ctx.job, ctx.stats
        remote_orders = await self._fetch_remote_orders(ctx, since)
        local_orders = await self.repo.load_orders(job.tenant_id, expand_platforms(job.platform))

        result = reconcile_with_diagnostics(
            str(job.tenant_id),
            Snapshot(orders=[_order_snapshot_from_row(o) for o in local_orders]),
            Snapshot(orders=[_order_snapshot(r) for r in remote_orders]),
            include_new_orders=include_new_orders,
        )
        self._record_changes(ctx, result)

        latest = dedupe_latest(
            remote_orders,
            key=lambda r: order_entity_id(r.platform, r.platform_order_id),
            updated_at=lambda r: r.updated_at,
        )
        # stored orders and their alerts commit together
        async with self.repo.savepoint():
            written = await self.repo.upsert_orders(job.tenant_id, latest, ctx.now, insert_new=include_new_orders)
            await self._emit(ctx, result)
        stats.items_processed = len(latest)
        stats.items_succeeded = written if include_new_orders else len(latest)

    async def _run_order_monitor(self, ctx: _JobContext, params: OrderMonitorParams) -> None:
        lookback = params.lookback_minutes or self.settings.order_lookback_minutes
        await self._reconcile_orders(ctx, ctx.now - timedelta(minutes=lookback), include_new_orders=True)

    async def _run_status_sync(self, ctx: _JobContext, params: StatusSyncParams) -> None:
        await self._reconcile_orders(ctx, ctx.now - timedelta(minutes=params.lookback_minutes), include_new_orders=False)

    # ── Order actions ────────────────────────────────────────────────────

    async def push_order_action(
        self,
        tenant_id: Any,
        platform: str,
        platform_order_id: str,
        action: OrderAction,
        extra: dict[str, Any] | None = None,
    ) -> Order:
        """Send ship/cancel/refund/deliver to the marketplace, then mirror it locally.

        Raises SyncError on failure; unlike ``execute`` this is a direct call
        made on behalf of a user, not a job.
        """
        now = utc_now()
        order = await self.repo.get_order(tenant_id, platform, platform_order_id)
        if order is None:
            raise PermanentFailure(f"Order {platform_order_id} not found", platform=platform)

        credential = await self.credential_store.get_credential(str(tenant_id), platform)
        adapter = self.adapter_factory(platform, str(tenant_id), credential)
        adapter.call_gate = self._gate(SyncStats(), str(tenant_id), platform)
        async with adapter:
            await adapter.update_order_status(platform_order_id, action, extra=extra)

        tracking = (extra or {}).get("tracking_number")
        await self.repo.set_order_status(order, ORDER_ACTION_STATUS[action], now, tracking_number=tracking)
        logger.info(
            "executor.order_action.applied",
            tenant_id=str(tenant_id),
            platform=platform,
            platform_order_id=platform_order_id,
            action=action.value,
        )
        return order


def _product_snapshot(product: Product, stock_quantity: int) -> ProductSnapshot:
    return ProductSnapshot(
        product_id=str(product.product_id),
        sku=product.sku,
        stock_quantity=stock_quantity,
        low_stock_threshold=product.low_stock_threshold,
        name=product.name,
    )


def _order_snapshot(order: RemoteOrder) -> OrderSnapshot:
    return OrderSnapshot(
        platform=order.platform,
        platform_order_id=order.platform_order_id,
        status=order.status,
        total_amount=order.total_amount,
        currency=order.currency,
        customer_name=order.customer_name,
        item_quantity=order.item_quantity,
        tracking_number=order.tracking_number,
        updated_at=order.updated_at,
    )


def _order_snapshot_from_row(order: Order) -> OrderSnapshot:
    return OrderSnapshot(
        platform=order.platform,
        platform_order_id=order.platform_order_id,
        status=order.status,
        total_amount=order.total_amount or 0.0,
        currency=order.currency or "USD",
        customer_name=order.customer_name,
        item_quantity=sum(int(item.get("quantity", 0)) for item in order.items or []),
        tracking_number=order.tracking_number,
        updated_at=order.remote_updated_at,
    )
