"""
Sync core schema - tenants, catalog, orders, schedules, jobs, logs, notifications

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

PLATFORMS = "'shopee', 'tiktokshop'"
JOB_PLATFORMS = "'shopee', 'tiktokshop', 'all'"
JOB_TYPES = "'inventory_sync', 'order_monitor', 'status_sync'"
JOB_PRIORITIES = "'low', 'medium', 'high', 'urgent'"


def _id(name: str) -> sa.Column:
    return sa.Column(name, UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _tenant_fk(nullable: bool = False) -> sa.Column:
    return sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.tenant_id"), nullable=nullable)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # 1. Tenants
    op.create_table(
        "tenants",
        _id("tenant_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_tenant_status"),
    )

    # 2. Platform credentials
    op.create_table(
        "platform_credentials",
        _id("credential_id"),
        _tenant_fk(),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("shop_id", sa.String(100), nullable=False),
        sa.Column("shop_name", sa.String(255)),
        sa.Column("access_token_encrypted", sa.Text),
        sa.Column("refresh_token_encrypted", sa.Text),
        sa.Column("token_expires_at", sa.DateTime),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_sync_at", sa.DateTime),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "platform", "shop_id", name="uq_credential_per_shop"),
        sa.CheckConstraint(f"platform IN ({PLATFORMS})", name="ck_credential_platform"),
    )
    op.create_index("ix_credentials_tenant_platform", "platform_credentials", ["tenant_id", "platform"])

    # 3. Products
    op.create_table(
        "products",
        _id("product_id"),
        _tenant_fk(),
        sa.Column("sku", sa.String(100), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Float, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("stock_quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("low_stock_threshold", sa.Integer, nullable=False, server_default="10"),
        sa.Column("shopee_listing_id", sa.String(100)),
        sa.Column("tiktokshop_listing_id", sa.String(100)),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("sync_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_synced_at", sa.DateTime),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "sku", name="uq_product_sku_per_tenant"),
        sa.CheckConstraint("stock_quantity >= 0", name="ck_product_stock_non_negative"),
        sa.CheckConstraint("status IN ('active', 'inactive', 'draft', 'out_of_stock')", name="ck_product_status"),
    )
    op.create_index("ix_products_tenant", "products", ["tenant_id"])

    # 4. Orders
    op.create_table(
        "orders",
        _id("order_id"),
        _tenant_fk(),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("platform_order_id", sa.String(100), nullable=False),
        sa.Column("customer_name", sa.String(255)),
        sa.Column("customer_email", sa.String(255)),
        sa.Column("total_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("tracking_number", sa.String(100)),
        sa.Column("payment_method", sa.String(50)),
        sa.Column("items", sa.JSON),
        sa.Column("order_date", sa.DateTime),
        sa.Column("remote_updated_at", sa.DateTime),
        sa.Column("last_synced_at", sa.DateTime),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "platform", "platform_order_id", name="uq_order_per_platform"),
        sa.CheckConstraint(f"platform IN ({PLATFORMS})", name="ck_order_platform"),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'shipped', 'delivered', 'cancelled', 'refunded')",
            name="ck_order_status",
        ),
    )
    op.create_index("ix_orders_tenant_status", "orders", ["tenant_id", "status"])

    # 5. Sync schedules
    op.create_table(
        "sync_schedules",
        _id("schedule_id"),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("job_type", sa.String(30), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False, server_default="all"),
        sa.Column("interval_minutes", sa.Integer),
        sa.Column("cron_expression", sa.String(100)),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_run", sa.DateTime),
        sa.Column("next_run", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("run_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failure_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_failures", sa.Integer, nullable=False, server_default="3"),
        sa.Column("parameters", sa.JSON),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "name", name="uq_schedule_name_per_tenant"),
        sa.CheckConstraint(f"job_type IN ({JOB_TYPES})", name="ck_schedule_job_type"),
        sa.CheckConstraint(f"platform IN ({JOB_PLATFORMS})", name="ck_schedule_platform"),
        sa.CheckConstraint(f"priority IN ({JOB_PRIORITIES})", name="ck_schedule_priority"),
        sa.CheckConstraint(
            "interval_minutes IS NOT NULL OR cron_expression IS NOT NULL",
            name="ck_schedule_has_cadence",
        ),
        sa.CheckConstraint("interval_minutes IS NULL OR interval_minutes > 0", name="ck_schedule_interval_positive"),
    )
    op.create_index("ix_schedules_due", "sync_schedules", ["enabled", "next_run"])

    # 6. Sync jobs (one row per attempt)
    op.create_table(
        "sync_jobs",
        _id("job_id"),
        _tenant_fk(),
        sa.Column("schedule_id", UUID(as_uuid=True), sa.ForeignKey("sync_schedules.schedule_id")),
        sa.Column("retry_of_job_id", UUID(as_uuid=True), sa.ForeignKey("sync_jobs.job_id")),
        sa.Column("job_type", sa.String(30), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.String(10), nullable=False, server_default="medium"),
        sa.Column("trigger_source", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("scheduled_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("parameters", sa.JSON),
        sa.Column("result", sa.JSON),
        sa.Column("error_message", sa.Text),
        sa.Column("failure_reason", sa.String(30)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(f"job_type IN ({JOB_TYPES})", name="ck_job_type"),
        sa.CheckConstraint(f"platform IN ({JOB_PLATFORMS})", name="ck_job_platform"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed', 'cancelled')",
            name="ck_job_status",
        ),
        sa.CheckConstraint(f"priority IN ({JOB_PRIORITIES})", name="ck_job_priority"),
        sa.CheckConstraint("trigger_source IN ('scheduled', 'manual', 'retry')", name="ck_job_trigger"),
        sa.CheckConstraint("retry_count >= 0", name="ck_job_retry_count"),
    )
    op.create_index("ix_jobs_pending_due", "sync_jobs", ["status", "scheduled_at"])
    op.create_index("ix_jobs_tenant_created", "sync_jobs", ["tenant_id", "created_at"])
    op.create_index("ix_jobs_retry_of", "sync_jobs", ["retry_of_job_id"])

    # 7. Sync logs (append-only)
    op.create_table(
        "sync_logs",
        _id("log_id"),
        _tenant_fk(),
        sa.Column("job_id", UUID(as_uuid=True), sa.ForeignKey("sync_jobs.job_id"), nullable=False),
        sa.Column("schedule_id", UUID(as_uuid=True), sa.ForeignKey("sync_schedules.schedule_id")),
        sa.Column("sync_type", sa.String(30), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("items_processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("items_succeeded", sa.Integer, nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("api_calls_made", sa.Integer, nullable=False, server_default="0"),
        sa.Column("changes_detected", sa.Integer, nullable=False, server_default="0"),
        sa.Column("notifications_created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_details", sa.JSON),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=False),
        sa.Column("duration_seconds", sa.Float, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('success', 'partial', 'failed')", name="ck_sync_log_status"),
    )
    op.create_index("ix_sync_logs_tenant_started", "sync_logs", ["tenant_id", "started_at"])

    # 8. Notifications
    op.create_table(
        "notifications",
        _id("notification_id"),
        _tenant_fk(),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("priority", sa.String(10), nullable=False, server_default="normal"),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("change_kind", sa.String(30), nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_archived", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("action_url", sa.String(500)),
        sa.Column("metadata", sa.JSON),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("read_at", sa.DateTime),
        sa.Column("expires_at", sa.DateTime),
        sa.CheckConstraint(
            "type IN ('new_order', 'order_status', 'low_stock', 'restock', 'sync_error', 'api_error', 'system')",
            name="ck_notification_type",
        ),
        sa.CheckConstraint("priority IN ('low', 'normal', 'high', 'critical')", name="ck_notification_priority"),
    )
    op.create_index("ix_notifications_dedup", "notifications", ["tenant_id", "entity_id", "change_kind"])
    op.create_index("ix_notifications_tenant_unread", "notifications", ["tenant_id", "is_read"])

    # 9. Scheduler logs
    op.create_table(
        "scheduler_logs",
        _id("log_id"),
        _tenant_fk(nullable=True),
        sa.Column("operation", sa.String(50), nullable=False),
        sa.Column("job_id", UUID(as_uuid=True)),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("metadata", sa.JSON),
        sa.Column("timestamp", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_scheduler_logs_operation_ts", "scheduler_logs", ["operation", "timestamp"])


def downgrade() -> None:
    for table in (
        "scheduler_logs",
        "notifications",
        "sync_logs",
        "sync_jobs",
        "sync_schedules",
        "orders",
        "products",
        "platform_credentials",
        "tenants",
    ):
        op.drop_table(table)
