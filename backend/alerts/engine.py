"""
Alert Engine — turn reconciliation Changes into deduplicated notifications.

Notification Types:
  - new_order:     order seen remotely for the first time (high-value → critical)
  - order_status:  order moved to a new status
  - low_stock:     stock crossed to at/below threshold (out of stock → critical)
  - restock:       stock crossed back above threshold
  - sync_error:    a job ran out of retries, or a schedule was disabled
  - api_error:     marketplace rejected the tenant's credential

Dedup: at most one active (unread, unarchived, unexpired) notification per
(tenant_id, entity_id, change_kind). A restock archives the matching breach
notification so the next crossing can alert again. A status transition to a
different status refreshes the order's active notification in place.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

import redis.asyncio as aioredis
import structlog

from core.config import Settings, get_settings
from db.models import Notification, SyncJob
from db.repositories import SyncRepository, expiry_from, utc_now
from sync.reconciliation import (
    Change,
    ChangeKind,
    NewOrder,
    StatusTransition,
    StockBreach,
    StockRestock,
)

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Priority Rules
# ──────────────────────────────────────────────────────────────────────────

PRIORITY_RULES = {
    ChangeKind.NEW_ORDER: {"default": "normal", "high_value": "critical"},
    ChangeKind.STATUS_TRANSITION: {"default": "low", "notable": "normal"},
    ChangeKind.STOCK_BREACH: {"default": "high", "out_of_stock": "critical"},
    ChangeKind.STOCK_RESTOCK: {"default": "low"},
    "sync_error": {"default": "high"},
    "api_error": {"default": "critical"},
}

NOTIFICATION_TYPES = {
    ChangeKind.NEW_ORDER: "new_order",
    ChangeKind.STATUS_TRANSITION: "order_status",
    ChangeKind.STOCK_BREACH: "low_stock",
    ChangeKind.STOCK_RESTOCK: "restock",
}

NOTABLE_STATUSES = frozenset({"shipped", "cancelled", "refunded"})


@dataclass(frozen=True)
class AlertPolicy:
    high_value_threshold: float = 1000.0
    bulk_item_threshold: int = 10
    ttl_days: int = 30

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AlertPolicy":
        settings = settings or get_settings()
        return cls(
            high_value_threshold=settings.high_value_order_threshold,
            bulk_item_threshold=settings.bulk_order_item_threshold,
            ttl_days=settings.notification_ttl_days,
        )


def classify_order_priority(total_amount: float, high_value_threshold: float) -> str:
    rules = PRIORITY_RULES[ChangeKind.NEW_ORDER]
    if total_amount >= high_value_threshold:
        return rules["high_value"]
    return rules["default"]


def classify_status_priority(new_status: str) -> str:
    rules = PRIORITY_RULES[ChangeKind.STATUS_TRANSITION]
    if new_status in NOTABLE_STATUSES:
        return rules["notable"]
    return rules["default"]


def classify_stock_priority(change: StockBreach) -> str:
    rules = PRIORITY_RULES[ChangeKind.STOCK_BREACH]
    if change.out_of_stock:
        return rules["out_of_stock"]
    return rules["default"]


def dedup_key(change: Change) -> tuple[str, str]:
    """(entity_id, change_kind) under which a change is deduplicated."""
    return change.entity_id, change.kind.value


# ──────────────────────────────────────────────────────────────────────────
# Notification Building
# ──────────────────────────────────────────────────────────────────────────


def build_notification(
    tenant_id: Any,
    change: Change,
    policy: AlertPolicy,
    now: datetime,
) -> Notification:
    """Apply the mapping table to one Change. Does not touch the database."""
    entity_id, change_kind = dedup_key(change)
    metadata: dict[str, Any] = {"entity_id": entity_id}

    if isinstance(change, NewOrder):
        order = change.after
        high_value = order.total_amount >= policy.high_value_threshold
        bulk = order.item_quantity >= policy.bulk_item_threshold
        customer = order.customer_name or "a customer"
        if high_value:
            title = "High Value Order"
            message = f"High value {order.platform} order #{order.platform_order_id} for {order.total_amount:.2f} {order.currency} from {customer}"
        elif bulk:
            title = "Bulk Order"
            message = f"Bulk {order.platform} order #{order.platform_order_id} with {order.item_quantity} items from {customer}"
        else:
            title = "New Order Received"
            message = f"New {order.platform} order #{order.platform_order_id} from {customer} for {order.total_amount:.2f} {order.currency}"
        priority = classify_order_priority(order.total_amount, policy.high_value_threshold)
        metadata.update(
            platform=order.platform,
            platform_order_id=order.platform_order_id,
            total_amount=order.total_amount,
            currency=order.currency,
            item_quantity=order.item_quantity,
            high_value=high_value,
            bulk_order=bulk,
        )
        action_url = f"/orders?platform={order.platform}&order={order.platform_order_id}"

    elif isinstance(change, StatusTransition):
        order = change.order
        if change.after == "shipped":
            title = "Order Shipped"
            tracking = f" (Tracking: {order.tracking_number})" if order.tracking_number else ""
            message = f"Order #{order.platform_order_id} has been shipped{tracking}"
        else:
            title = "Order Status Updated"
            message = f"Order #{order.platform_order_id} status changed from {change.before} to {change.after}"
        priority = classify_status_priority(change.after)
        metadata.update(
            platform=order.platform,
            platform_order_id=order.platform_order_id,
            before=change.before,
            after=change.after,
        )
        if order.tracking_number:
            metadata["tracking_number"] = order.tracking_number
        action_url = f"/orders?platform={order.platform}&order={order.platform_order_id}"

    elif isinstance(change, StockBreach):
        product = change.product
        label = f'"{product.name}" (SKU: {product.sku})' if product.name else f"SKU {product.sku}"
        if change.out_of_stock:
            title = "Out of Stock"
            message = f"Product {label} is out of stock"
        else:
            title = "Low Stock Alert"
            message = f"Product {label} is running low. Current stock: {change.after}"
        priority = classify_stock_priority(change)
        metadata.update(
            sku=product.sku,
            before=change.before,
            after=change.after,
            threshold=product.low_stock_threshold,
            out_of_stock=change.out_of_stock,
        )
        action_url = f"/products/{product.product_id}"

    elif isinstance(change, StockRestock):
        product = change.product
        label = f'"{product.name}" (SKU: {product.sku})' if product.name else f"SKU {product.sku}"
        title = "Product Restocked"
        message = f"Product {label} is back in stock. Current stock: {change.after}"
        priority = PRIORITY_RULES[ChangeKind.STOCK_RESTOCK]["default"]
        metadata.update(
            sku=product.sku,
            before=change.before,
            after=change.after,
            threshold=product.low_stock_threshold,
        )
        action_url = f"/products/{product.product_id}"

    else:
        raise TypeError(f"Unsupported change: {type(change).__name__}")

    return Notification(
        tenant_id=tenant_id,
        type=NOTIFICATION_TYPES[change.kind],
        title=title,
        message=message,
        priority=priority,
        entity_id=entity_id,
        change_kind=change_kind,
        action_url=action_url,
        notification_metadata=metadata,
        created_at=now,
        expires_at=expiry_from(now, policy.ttl_days),
    )


# ──────────────────────────────────────────────────────────────────────────
# Emission (dedup + persist)
# ──────────────────────────────────────────────────────────────────────────


async def _persist_unless_active(
    repo: SyncRepository,
    notification: Notification,
    now: datetime,
    refresh_on: str | None = None,
) -> Notification | None:
    """Insert ``notification`` unless an active one shares its dedup key.

    With ``refresh_on``, an active notification whose metadata differs on
    that field is overwritten with the new content and returned instead.
    """
    existing = await repo.find_active_notification(
        notification.tenant_id,
        notification.entity_id,
        notification.change_kind,
        now,
    )
    if existing is not None and refresh_on is not None:
        previous = (existing.notification_metadata or {}).get(refresh_on)
        if previous != notification.notification_metadata.get(refresh_on):
            logger.info(
                "alerts.refreshed",
                tenant_id=str(notification.tenant_id),
                entity_id=notification.entity_id,
                change_kind=notification.change_kind,
                previous=previous,
            )
            return await repo.refresh_notification(existing, notification)
    if existing is not None:
        logger.debug(
            "alerts.deduplicated",
            tenant_id=str(notification.tenant_id),
            entity_id=notification.entity_id,
            change_kind=notification.change_kind,
        )
        return None
    return await repo.add_notification(notification)


async def emit(
    repo: SyncRepository,
    tenant_id: Any,
    change: Change,
    policy: AlertPolicy | None = None,
    now: datetime | None = None,
) -> Notification | None:
    """
    Persist the notification for one Change.

    Returns the created (or, for a new order status, refreshed) Notification,
    or None when an equivalent notification is still active (skipped).
    """
    policy = policy or AlertPolicy.from_settings()
    now = now or utc_now()

    if isinstance(change, StockRestock):
        archived = await repo.archive_active_notifications(
            tenant_id, change.entity_id, ChangeKind.STOCK_BREACH.value, now
        )
        if archived:
            logger.info("alerts.breach_resolved", tenant_id=str(tenant_id), entity_id=change.entity_id)

    refresh_on = "after" if isinstance(change, StatusTransition) else None
    return await _persist_unless_active(repo, build_notification(tenant_id, change, policy, now), now, refresh_on)


async def emit_changes(
    repo: SyncRepository,
    tenant_id: Any,
    changes: Iterable[Change],
    policy: AlertPolicy | None = None,
    now: datetime | None = None,
) -> list[Notification]:
    policy = policy or AlertPolicy.from_settings()
    now = now or utc_now()
    created = []
    for change in changes:
        notification = await emit(repo, tenant_id, change, policy=policy, now=now)
        if notification is not None:
            created.append(notification)
    return created


async def emit_sync_error(
    repo: SyncRepository,
    job: SyncJob,
    message: str,
    policy: AlertPolicy | None = None,
    now: datetime | None = None,
) -> Notification | None:
    """A job exhausted its retries."""
    policy = policy or AlertPolicy.from_settings()
    now = now or utc_now()
    notification = Notification(
        tenant_id=job.tenant_id,
        type="sync_error",
        title="Sync Failed",
        message=f"{job.job_type} for {job.platform} failed after {job.retry_count} retries: {message}",
        priority=PRIORITY_RULES["sync_error"]["default"],
        entity_id=f"{job.job_type}:{job.platform}",
        change_kind="sync_error",
        action_url="/settings/sync",
        notification_metadata={
            "job_id": str(job.job_id),
            "job_type": job.job_type,
            "platform": job.platform,
            "retry_count": job.retry_count,
            "failure_reason": job.failure_reason,
        },
        created_at=now,
        expires_at=expiry_from(now, policy.ttl_days),
    )
    return await _persist_unless_active(repo, notification, now)


async def emit_schedule_disabled(
    repo: SyncRepository,
    tenant_id: Any,
    schedule_id: Any,
    schedule_name: str,
    failure_count: int,
    policy: AlertPolicy | None = None,
    now: datetime | None = None,
) -> Notification | None:
    policy = policy or AlertPolicy.from_settings()
    now = now or utc_now()
    notification = Notification(
        tenant_id=tenant_id,
        type="sync_error",
        title="Sync Schedule Disabled",
        message=f'Schedule "{schedule_name}" was disabled after {failure_count} consecutive failures',
        priority=PRIORITY_RULES["sync_error"]["default"],
        entity_id=f"schedule:{schedule_id}",
        change_kind="schedule_disabled",
        action_url="/settings/sync",
        notification_metadata={"schedule_id": str(schedule_id), "failure_count": failure_count},
        created_at=now,
        expires_at=expiry_from(now, policy.ttl_days),
    )
    return await _persist_unless_active(repo, notification, now)


async def emit_auth_failure(
    repo: SyncRepository,
    tenant_id: Any,
    platform: str,
    message: str,
    policy: AlertPolicy | None = None,
    now: datetime | None = None,
) -> Notification | None:
    """The marketplace rejected (or we could not load) the tenant's credential."""
    policy = policy or AlertPolicy.from_settings()
    now = now or utc_now()
    notification = Notification(
        tenant_id=tenant_id,
        type="api_error",
        title="Marketplace Connection Error",
        message=f"Reconnect your {platform} shop: {message}",
        priority=PRIORITY_RULES["api_error"]["default"],
        entity_id=f"credential:{platform}",
        change_kind="api_error",
        action_url="/settings/integrations",
        notification_metadata={"platform": platform},
        created_at=now,
        expires_at=expiry_from(now, policy.ttl_days),
    )
    return await _persist_unless_active(repo, notification, now)


# ──────────────────────────────────────────────────────────────────────────
# Real-time Publishing
# ──────────────────────────────────────────────────────────────────────────


async def publish_notifications(notifications: list[Notification], redis_url: str | None = None) -> int:
    """
    Publish new notifications to Redis pub/sub for the dashboard.
    Returns number of subscribers notified. Never raises.
    """
    if not notifications:
        return 0

    redis = aioredis.from_url(redis_url or get_settings().redis_url)
    try:
        total_subs = 0
        for notification in notifications:
            payload = json.dumps(
                {
                    "type": "notification",
                    "payload": {
                        "notification_id": str(notification.notification_id),
                        "type": notification.type,
                        "priority": notification.priority,
                        "title": notification.title,
                        "message": notification.message,
                        "entity_id": notification.entity_id,
                        "created_at": notification.created_at.isoformat(),
                    },
                }
            )
            total_subs += await redis.publish(f"notifications:{notification.tenant_id}", payload)
        return total_subs
    except Exception as exc:  # noqa: BLE001
        logger.warning("alerts.publish_failed", count=len(notifications), error=str(exc))
        return 0
    finally:
        await redis.aclose()
