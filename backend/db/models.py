"""
MarketSync Database Models

Tables for the marketplace synchronization core.
Multi-tenant via tenant_id on all tables.

Tables:
  Catalog & Orders:
  1. tenants               - Dashboard accounts
  2. platform_credentials  - Encrypted marketplace access tokens
  3. products              - Unified product catalog (+ platform listing refs)
  4. orders                - Unified orders across marketplaces

  Sync Core:
  5. sync_schedules        - Recurring sync intent per tenant
  6. sync_jobs             - One execution attempt (retries are new rows)
  7. sync_logs             - Append-only audit of finished jobs
  8. notifications         - Deduplicated user-visible alerts
  9. scheduler_logs        - Scheduler operation trail
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# Alias so Column(UUID(as_uuid=True)) calls read like plain PostgreSQL
def UUID(as_uuid=True):
    return GUID()


from sqlalchemy.orm import relationship

from db.session import Base

PLATFORMS = ("shopee", "tiktokshop")
JOB_PLATFORMS = PLATFORMS + ("all",)
JOB_TYPES = ("inventory_sync", "order_monitor", "status_sync")
JOB_STATUSES = ("pending", "running", "completed", "failed", "cancelled")
TERMINAL_JOB_STATUSES = ("completed", "failed", "cancelled")
JOB_PRIORITIES = ("low", "medium", "high", "urgent")
NOTIFICATION_PRIORITIES = ("low", "normal", "high", "critical")
ORDER_STATUSES = ("pending", "paid", "shipped", "delivered", "cancelled", "refunded")


def _in(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{v}'" for v in values)


# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_tenant_status"),
    )

    credentials = relationship("PlatformCredential", back_populates="tenant", cascade="all, delete-orphan")
    schedules = relationship("SyncSchedule", back_populates="tenant")


# ─── 2. Platform Credentials ────────────────────────────────────────────────


class PlatformCredential(Base):
    __tablename__ = "platform_credentials"

    credential_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=False)
    platform = Column(String(20), nullable=False)
    shop_id = Column(String(100), nullable=False)
    shop_name = Column(String(255))
    access_token_encrypted = Column(Text)
    refresh_token_encrypted = Column(Text)
    token_expires_at = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "shop_id", name="uq_credential_per_shop"),
        Index("ix_credentials_tenant_platform", "tenant_id", "platform"),
        CheckConstraint(f"platform IN ({_in(PLATFORMS)})", name="ck_credential_platform"),
    )

    tenant = relationship("Tenant", back_populates="credentials")


# ─── 3. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=False)
    sku = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=False, default="USD")
    stock_quantity = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=10)
    # Platform listing references; a product without any is never pushed
    shopee_listing_id = Column(String(100))
    tiktokshop_listing_id = Column(String(100))
    status = Column(String(20), nullable=False, default="active")
    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_product_sku_per_tenant"),
        Index("ix_products_tenant", "tenant_id"),
        CheckConstraint("stock_quantity >= 0", name="ck_product_stock_non_negative"),
        CheckConstraint("status IN ('active', 'inactive', 'draft', 'out_of_stock')", name="ck_product_status"),
    )

    def listing_for(self, platform: str) -> str | None:
        return {
            "shopee": self.shopee_listing_id,
            "tiktokshop": self.tiktokshop_listing_id,
        }.get(platform)


# ─── 4. Orders ──────────────────────────────────────────────────────────────


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=False)
    platform = Column(String(20), nullable=False)
    platform_order_id = Column(String(100), nullable=False)
    customer_name = Column(String(255))
    customer_email = Column(String(255))
    total_amount = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(String(20), nullable=False, default="pending")
    tracking_number = Column(String(100))
    payment_method = Column(String(50))
    items = Column(JSON, default=list)
    order_date = Column(DateTime)
    remote_updated_at = Column(DateTime)
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "platform_order_id", name="uq_order_per_platform"),
        Index("ix_orders_tenant_status", "tenant_id", "status"),
        CheckConstraint(f"platform IN ({_in(PLATFORMS)})", name="ck_order_platform"),
        CheckConstraint(f"status IN ({_in(ORDER_STATUSES)})", name="ck_order_status"),
    )


# ─── 5. Sync Schedules ──────────────────────────────────────────────────────


class SyncSchedule(Base):
    __tablename__ = "sync_schedules"

    schedule_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=False)
    name = Column(String(255), nullable=False)
    job_type = Column(String(30), nullable=False)
    platform = Column(String(20), nullable=False, default="all")
    # interval_minutes wins over cron_expression when both are set
    interval_minutes = Column(Integer)
    cron_expression = Column(String(100))
    enabled = Column(Boolean, nullable=False, default=True)
    priority = Column(String(10), nullable=False, default="medium")
    max_retries = Column(Integer, nullable=False, default=3)
    last_run = Column(DateTime)
    next_run = Column(DateTime, nullable=False, default=datetime.utcnow)
    run_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    max_failures = Column(Integer, nullable=False, default=3)
    parameters = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_schedule_name_per_tenant"),
        Index("ix_schedules_due", "enabled", "next_run"),
        CheckConstraint(f"job_type IN ({_in(JOB_TYPES)})", name="ck_schedule_job_type"),
        CheckConstraint(f"platform IN ({_in(JOB_PLATFORMS)})", name="ck_schedule_platform"),
        CheckConstraint(f"priority IN ({_in(JOB_PRIORITIES)})", name="ck_schedule_priority"),
        CheckConstraint(
            "interval_minutes IS NOT NULL OR cron_expression IS NOT NULL",
            name="ck_schedule_has_cadence",
        ),
        CheckConstraint("interval_minutes IS NULL OR interval_minutes > 0", name="ck_schedule_interval_positive"),
    )

    tenant = relationship("Tenant", back_populates="schedules")


# ─── 6. Sync Jobs ───────────────────────────────────────────────────────────


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    job_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=False)
    schedule_id = Column(UUID(as_uuid=True), ForeignKey("sync_schedules.schedule_id"), nullable=True)
    # Retries are new rows pointing back at the attempt they replace
    retry_of_job_id = Column(UUID(as_uuid=True), ForeignKey("sync_jobs.job_id"), nullable=True)
    job_type = Column(String(30), nullable=False)
    platform = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    priority = Column(String(10), nullable=False, default="medium")
    trigger_source = Column(String(20), nullable=False, default="scheduled")
    scheduled_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    parameters = Column(JSON, default=dict)
    result = Column(JSON)
    error_message = Column(Text)
    failure_reason = Column(String(30))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_jobs_pending_due", "status", "scheduled_at"),
        Index("ix_jobs_tenant_created", "tenant_id", "created_at"),
        Index("ix_jobs_retry_of", "retry_of_job_id"),
        CheckConstraint(f"job_type IN ({_in(JOB_TYPES)})", name="ck_job_type"),
        CheckConstraint(f"platform IN ({_in(JOB_PLATFORMS)})", name="ck_job_platform"),
        CheckConstraint(f"status IN ({_in(JOB_STATUSES)})", name="ck_job_status"),
        CheckConstraint(f"priority IN ({_in(JOB_PRIORITIES)})", name="ck_job_priority"),
        CheckConstraint("trigger_source IN ('scheduled', 'manual', 'retry')", name="ck_job_trigger"),
        CheckConstraint("retry_count >= 0", name="ck_job_retry_count"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


# ─── 7. Sync Logs ───────────────────────────────────────────────────────────


class SyncLog(Base):
    __tablename__ = "sync_logs"

    log_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=False)
    job_id = Column(UUID(as_uuid=True), ForeignKey("sync_jobs.job_id"), nullable=False)
    schedule_id = Column(UUID(as_uuid=True), ForeignKey("sync_schedules.schedule_id"), nullable=True)
    sync_type = Column(String(30), nullable=False)
    platform = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False)
    items_processed = Column(Integer, nullable=False, default=0)
    items_succeeded = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    api_calls_made = Column(Integer, nullable=False, default=0)
    changes_detected = Column(Integer, nullable=False, default=0)
    notifications_created = Column(Integer, nullable=False, default=0)
    error_details = Column(JSON)
    retry_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=False)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_sync_logs_tenant_started", "tenant_id", "started_at"),
        CheckConstraint("status IN ('success', 'partial', 'failed')", name="ck_sync_log_status"),
    )


# ─── 8. Notifications ───────────────────────────────────────────────────────


class Notification(Base):
    __tablename__ = "notifications"

    notification_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=False)
    type = Column(String(30), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String(10), nullable=False, default="normal")
    # Dedup key: one active notification per (tenant, entity, kind)
    entity_id = Column(String(255), nullable=False)
    change_kind = Column(String(30), nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    is_archived = Column(Boolean, nullable=False, default=False)
    action_url = Column(String(500))
    notification_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    read_at = Column(DateTime)
    expires_at = Column(DateTime)

    __table_args__ = (
        Index("ix_notifications_dedup", "tenant_id", "entity_id", "change_kind"),
        Index("ix_notifications_tenant_unread", "tenant_id", "is_read"),
        CheckConstraint(
            "type IN ('new_order', 'order_status', 'low_stock', 'restock', 'sync_error', 'api_error', 'system')",
            name="ck_notification_type",
        ),
        CheckConstraint(f"priority IN ({_in(NOTIFICATION_PRIORITIES)})", name="ck_notification_priority"),
    )


# ─── 9. Scheduler Logs ──────────────────────────────────────────────────────


class SchedulerLog(Base):
    __tablename__ = "scheduler_logs"

    log_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.tenant_id"), nullable=True)
    operation = Column(String(50), nullable=False)
    job_id = Column(UUID(as_uuid=True), nullable=True)
    message = Column(Text, nullable=False)
    log_metadata = Column("metadata", JSON, default=dict)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_scheduler_logs_operation_ts", "operation", "timestamp"),)
