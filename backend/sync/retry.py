"""
Retry Coordinator — turns a failed job into its next attempt.

A retry is a new pending job row pointing back at the failed one through
``retry_of_job_id``; the failed row is never reopened. Backoff doubles per
attempt: base, 2*base, 4*base ... measured from the failure.

Only retryable failure reasons (transient, rate_limited, unexpected_error)
are retried. Auth and permanent failures stop here. Once ``retry_count``
reaches ``max_retries`` a ``sync_error`` notification replaces the retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from alerts.engine import AlertPolicy, emit_sync_error
from core.config import get_settings
from core.errors import is_retryable_reason
from db.models import Notification, SyncJob
from db.repositories import SyncRepository, utc_now

logger = structlog.get_logger()

RETRY_SCHEDULED = "scheduled"
RETRY_EXHAUSTED = "exhausted"
RETRY_NOT_RETRYABLE = "not_retryable"
RETRY_ALREADY_SCHEDULED = "already_scheduled"
RETRY_NOT_FAILED = "not_failed"


@dataclass
class RetryDecision:
    action: str
    retry_job: SyncJob | None = None
    notification: Notification | None = None
    delay: timedelta | None = None


def backoff_delay(retry_count: int, base_delay_minutes: int) -> timedelta:
    """Delay before the attempt that follows a failure at ``retry_count``."""
    return timedelta(minutes=base_delay_minutes * (2**retry_count))


class RetryCoordinator:
    def __init__(
        self,
        repo: SyncRepository,
        base_delay_minutes: int | None = None,
        alert_policy: AlertPolicy | None = None,
    ):
        settings = get_settings()
        self.repo = repo
        self.base_delay_minutes = (
            base_delay_minutes if base_delay_minutes is not None else settings.retry_base_delay_minutes
        )
        self.alert_policy = alert_policy or AlertPolicy.from_settings(settings)

    async def handle(self, job: SyncJob, now: datetime | None = None) -> RetryDecision:
        """Decide (and persist) what follows a job that just finished.

        Safe to call more than once for the same job: a second call finds
        the existing retry row and does nothing.
        """
        now = now or utc_now()
        log = logger.bind(tenant_id=str(job.tenant_id), job_id=str(job.job_id), job_type=job.job_type)

        if job.status != "failed":
            return RetryDecision(action=RETRY_NOT_FAILED)

        if not is_retryable_reason(job.failure_reason):
            log.info("retry.not_retryable", reason=job.failure_reason)
            return RetryDecision(action=RETRY_NOT_RETRYABLE)

        if await self.repo.retry_exists(job.job_id):
            return RetryDecision(action=RETRY_ALREADY_SCHEDULED)

        if job.retry_count >= job.max_retries:
            notification = await emit_sync_error(
                self.repo,
                job,
                job.error_message or job.failure_reason or "unknown error",
                policy=self.alert_policy,
                now=now,
            )
            await self.repo.log_operation(
                "retries_exhausted",
                f"{job.job_type} exhausted {job.max_retries} retries",
                tenant_id=job.tenant_id,
                job_id=job.job_id,
                metadata={"failure_reason": job.failure_reason},
            )
            log.warning("retry.exhausted", retry_count=job.retry_count, max_retries=job.max_retries)
            return RetryDecision(action=RETRY_EXHAUSTED, notification=notification)

        delay = backoff_delay(job.retry_count, self.base_delay_minutes)
        retry_job = await self.repo.create_job(
            tenant_id=job.tenant_id,
            schedule_id=job.schedule_id,
            retry_of_job_id=job.job_id,
            job_type=job.job_type,
            platform=job.platform,
            status="pending",
            priority=job.priority,
            trigger_source="retry",
            scheduled_at=now + delay,
            retry_count=job.retry_count + 1,
            max_retries=job.max_retries,
            parameters=dict(job.parameters or {}),
            created_at=now,
        )
        await self.repo.log_operation(
            "job_retry_scheduled",
            f"Retry {retry_job.retry_count}/{job.max_retries} scheduled in {int(delay.total_seconds() // 60)}m",
            tenant_id=job.tenant_id,
            job_id=retry_job.job_id,
            metadata={"retry_of_job_id": str(job.job_id), "scheduled_at": retry_job.scheduled_at.isoformat()},
        )
        log.info(
            "retry.scheduled",
            retry_job_id=str(retry_job.job_id),
            retry_count=retry_job.retry_count,
            delay_minutes=delay.total_seconds() / 60,
        )
        return RetryDecision(action=RETRY_SCHEDULED, retry_job=retry_job, delay=delay)
