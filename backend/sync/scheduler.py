"""
Job Scheduler — the periodic driver of the sync core.

One tick (``run_due_schedules``), invoked every minute by Celery beat:
  1. every enabled schedule with next_run <= now gets a pending job and its
     next_run advanced (interval, or the cron expression's next fire time)
  2. every pending job that is due (scheduled, manual, retry) is dispatched
     in priority order: urgent > high > medium > low, then oldest first
  3. each finished job goes through the retry coordinator and updates its
     schedule's failure bookkeeping

Dispatch is either inline (jobs run one after another inside the tick) or
fanned out to Celery, one ``workers.scheduler.execute_job`` task per job.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog
from celery.schedules import ParseException, crontab

from alerts.engine import AlertPolicy, emit_schedule_disabled
from core.config import Settings, get_settings
from core.errors import PermanentFailure
from db.models import JOB_PLATFORMS, JOB_PRIORITIES, JOB_TYPES, SyncJob, SyncSchedule
from db.repositories import SyncRepository, utc_now
from sync.executor import JobOutcome, SyncJobExecutor, parse_job_params
from sync.retry import RETRY_SCHEDULED, RetryCoordinator, RetryDecision

logger = structlog.get_logger()

DEFAULT_SCHEDULES = {
    "inventory_sync": {"interval_minutes": 15, "priority": "medium", "max_retries": 3},
    "order_monitor": {"interval_minutes": 5, "priority": "high", "max_retries": 3},
    "status_sync": {"interval_minutes": 30, "priority": "low", "max_retries": 2},
}

DEFAULT_SCHEDULE_NAMES = {
    "inventory_sync": "Inventory sync",
    "order_monitor": "Order monitor",
    "status_sync": "Order status sync",
}


# ─── Cron ────────────────────────────────────────────────────────────────


def parse_cron(expression: str, now: datetime | None = None) -> crontab:
    """Five-field cron expression (minute hour day-of-month month day-of-week)."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {len(fields)}: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    kwargs: dict[str, Any] = {}
    if now is not None:
        kwargs["nowfun"] = lambda: now
    try:
        schedule = crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            **kwargs,
        )
    except (ParseException, ValueError) as exc:
        raise ValueError(f"Invalid cron expression {expression!r}: {exc}") from exc
    return schedule


def next_cron_run(expression: str, after: datetime) -> datetime:
    """First fire time strictly after ``after`` (naive UTC in, naive UTC out)."""
    aware_after = after.replace(tzinfo=timezone.utc) if after.tzinfo is None else after
    schedule = parse_cron(expression, now=aware_after)
    last_run_at, delta, _ = schedule.remaining_delta(aware_after)
    next_run = last_run_at + delta
    if next_run.tzinfo is not None:
        next_run = next_run.astimezone(timezone.utc).replace(tzinfo=None)
    return next_run


def next_run_for(schedule: SyncSchedule, now: datetime) -> datetime:
    """When a schedule fires next. ``interval_minutes`` wins over ``cron_expression``."""
    if schedule.interval_minutes:
        return now + timedelta(minutes=schedule.interval_minutes)
    if schedule.cron_expression:
        return next_cron_run(schedule.cron_expression, now)
    raise ValueError(f"Schedule {schedule.schedule_id} has neither interval_minutes nor cron_expression")


# ─── Summary ─────────────────────────────────────────────────────────────


@dataclass
class SchedulerRunSummary:
    schedules_due: int = 0
    jobs_created: int = 0
    jobs_dispatched: int = 0
    completed: int = 0
    failed: int = 0
    retries_scheduled: int = 0
    notifications_created: int = 0
    schedules_disabled: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


# ─── Scheduler ───────────────────────────────────────────────────────────


class JobScheduler:
    def __init__(
        self,
        repo: SyncRepository,
        executor: SyncJobExecutor | None = None,
        retry_coordinator: RetryCoordinator | None = None,
        settings: Settings | None = None,
        alert_policy: AlertPolicy | None = None,
        send_task: Callable[..., Any] | None = None,
    ):
        self.settings = settings or get_settings()
        self.repo = repo
        self.executor = executor
        self.alert_policy = alert_policy or AlertPolicy.from_settings(self.settings)
        self.retry_coordinator = retry_coordinator or RetryCoordinator(repo, alert_policy=self.alert_policy)
        self.send_task = send_task

    @property
    def dispatch_mode(self) -> str:
        if self.settings.scheduler_dispatch_mode == "celery" and self.send_task is not None:
            return "celery"
        return "inline"

    # ── Tick ─────────────────────────────────────────────────────────────

    async def run_due_schedules(self, now: datetime | None = None, tenant_id: Any | None = None) -> SchedulerRunSummary:
        """One scheduler tick. Commits after the schedule pass and after every job.

        A job that raises out of ``process_job`` has its uncommitted writes
        rolled back (the claim included, so it stays pending for the next
        tick) and the tick moves on. Inline jobs are stamped with the time
        they actually start, offset from ``now``.
        """
        now = now or utc_now()
        tick_clock = utc_now()
        summary = SchedulerRunSummary()

        for schedule in await self.repo.due_schedules(now, tenant_id=tenant_id):
            summary.schedules_due += 1
            try:
                next_run = next_run_for(schedule, now)
            except ValueError as exc:
                await self.repo.disable_schedule(schedule, now)
                summary.schedules_disabled += 1
                summary.errors.append(str(exc))
                logger.error("scheduler.schedule.invalid", schedule_id=str(schedule.schedule_id), error=str(exc))
                continue

            job = await self.repo.create_job(
                tenant_id=schedule.tenant_id,
                schedule_id=schedule.schedule_id,
                job_type=schedule.job_type,
                platform=schedule.platform,
                status="pending",
                priority=schedule.priority,
                trigger_source="scheduled",
                scheduled_at=now,
                retry_count=0,
                max_retries=schedule.max_retries,
                parameters=dict(schedule.parameters or {}),
                created_at=now,
            )
            await self.repo.mark_schedule_dispatched(schedule, now, next_run)
            await self.repo.log_operation(
                "job_created",
                f"Scheduled {schedule.job_type} job created",
                tenant_id=schedule.tenant_id,
                job_id=job.job_id,
                metadata={"schedule_id": str(schedule.schedule_id), "next_run": next_run.isoformat()},
            )
            summary.jobs_created += 1
        await self.repo.commit()

        jobs = await self.repo.pending_jobs_due(now, tenant_id=tenant_id, limit=self.settings.scheduler_max_jobs_per_tick)
        # a rollback expires every loaded row, so each job is re-fetched by id
        job_ids = [job.job_id for job in jobs]
        for job_id in job_ids:
            try:
                if self.dispatch_mode == "celery":
                    self.send_task("workers.scheduler.execute_job", kwargs={"job_id": str(job_id)})
                    summary.jobs_dispatched += 1
                    continue

                job = await self.repo.get_job(job_id)
                if job is None:
                    continue
                job_now = now + (utc_now() - tick_clock)
                outcome, decision = await self.process_job(job, now=job_now)
                if not outcome.claimed:
                    continue
                summary.jobs_dispatched += 1
                self._tally(summary, outcome, decision)
            except Exception as exc:  # noqa: BLE001
                await self.repo.rollback()
                summary.errors.append(f"{job_id}: {exc}")
                logger.error("scheduler.dispatch_failed", job_id=str(job_id), error=str(exc), exc_info=True)
            finally:
                await self.repo.commit()

        await self.repo.log_operation(
            "scheduler_check",
            f"Tick: {summary.jobs_created} created, {summary.jobs_dispatched} dispatched",
            tenant_id=tenant_id,
            metadata=summary.as_dict(),
        )
        await self.repo.commit()
        logger.info("scheduler.tick.completed", dispatch_mode=self.dispatch_mode, **summary.as_dict())
        return summary

    def _tally(self, summary: SchedulerRunSummary, outcome: JobOutcome, decision: JobDecision) -> None:
        if outcome.succeeded:
            summary.completed += 1
        else:
            summary.failed += 1
        summary.notifications_created += len(outcome.notifications) + len(decision.notifications)
        if decision.retry.action == RETRY_SCHEDULED:
            summary.retries_scheduled += 1
        if decision.schedule_disabled:
            summary.schedules_disabled += 1

    async def process_job(self, job: SyncJob, now: datetime | None = None) -> tuple[JobOutcome, JobDecision]:
        """Execute one job, then apply retry and schedule bookkeeping."""
        if self.executor is None:
            raise RuntimeError("JobScheduler needs an executor to run jobs inline")
        outcome = await self.executor.execute(job, now=now)
        if not outcome.claimed:
            return outcome, JobDecision(retry=RetryDecision(action="not_claimed"))
        return outcome, await self.after_job(job, outcome, now=now)

    async def after_job(self, job: SyncJob, outcome: JobOutcome, now: datetime | None = None) -> JobDecision:
        now = now or utc_now()
        decision = JobDecision(retry=await self.retry_coordinator.handle(job, now=now))
        if decision.retry.notification is not None:
            decision.notifications.append(decision.retry.notification)

        if job.schedule_id is None:
            return decision
        if not outcome.succeeded and job.trigger_source != "scheduled":
            # retries of a scheduled run count once, through the original job
            return decision

        schedule = await self.repo.record_schedule_outcome(job.schedule_id, outcome.succeeded, now)
        if schedule is None or not schedule.enabled or outcome.succeeded:
            return decision
        if schedule.failure_count >= schedule.max_failures:
            await self.repo.disable_schedule(schedule, now)
            await self.repo.log_operation(
                "schedule_disabled",
                f"Schedule disabled after {schedule.failure_count} consecutive failures",
                tenant_id=schedule.tenant_id,
                job_id=job.job_id,
                metadata={"schedule_id": str(schedule.schedule_id)},
            )
            notification = await emit_schedule_disabled(
                self.repo,
                schedule.tenant_id,
                schedule.schedule_id,
                schedule.name,
                schedule.failure_count,
                policy=self.alert_policy,
                now=now,
            )
            if notification is not None:
                decision.notifications.append(notification)
            decision.schedule_disabled = True
            logger.warning(
                "scheduler.schedule.disabled",
                schedule_id=str(schedule.schedule_id),
                failure_count=schedule.failure_count,
            )
        return decision

    # ── Manual operations ────────────────────────────────────────────────

    async def run_now(
        self,
        tenant_id: Any,
        job_type: str,
        platform: str,
        parameters: dict | None = None,
        priority: str = "high",
        max_retries: int | None = None,
    ) -> str:
        """Queue a job for immediate execution; it runs on the next tick."""
        _validate_job_fields(job_type, platform, priority)
        params = parse_job_params(job_type, parameters)
        now = utc_now()
        job = await self.repo.create_job(
            tenant_id=tenant_id,
            job_type=job_type,
            platform=platform,
            status="pending",
            priority=priority,
            trigger_source="manual",
            scheduled_at=now,
            retry_count=0,
            max_retries=max_retries if max_retries is not None else self.settings.default_max_retries,
            parameters=params.model_dump(mode="json"),
            created_at=now,
        )
        await self.repo.log_operation(
            "job_created",
            f"Manual {job_type} job queued",
            tenant_id=tenant_id,
            job_id=job.job_id,
            metadata={"platform": platform, "priority": priority},
        )
        logger.info("scheduler.run_now", tenant_id=str(tenant_id), job_id=str(job.job_id), job_type=job_type)
        return str(job.job_id)

    async def cancel_job(self, job_id: Any) -> bool:
        """Cancel a pending job. Running and finished jobs are left alone."""
        job = await self.repo.get_job(job_id)
        if job is None:
            return False
        cancelled = await self.repo.cancel_job(job_id, utc_now())
        if cancelled:
            await self.repo.log_operation("job_cancelled", "Job cancelled", tenant_id=job.tenant_id, job_id=job_id)
        logger.info("scheduler.cancel_job", job_id=str(job_id), cancelled=cancelled)
        return cancelled

    async def create_schedule(
        self,
        tenant_id: Any,
        name: str,
        job_type: str,
        platform: str,
        interval_minutes: int | None = None,
        cron_expression: str | None = None,
        priority: str = "medium",
        max_retries: int | None = None,
        max_failures: int = 3,
        parameters: dict | None = None,
        now: datetime | None = None,
    ) -> SyncSchedule:
        _validate_job_fields(job_type, platform, priority)
        params = parse_job_params(job_type, parameters)
        if interval_minutes is not None and interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        if not interval_minutes and not cron_expression:
            raise ValueError("A schedule needs interval_minutes or cron_expression")
        if cron_expression and not interval_minutes:
            parse_cron(cron_expression)

        now = now or utc_now()
        schedule = SyncSchedule(
            tenant_id=tenant_id,
            name=name,
            job_type=job_type,
            platform=platform,
            interval_minutes=interval_minutes,
            cron_expression=cron_expression,
            enabled=True,
            priority=priority,
            max_retries=max_retries if max_retries is not None else self.settings.default_max_retries,
            max_failures=max_failures,
            parameters=params.model_dump(mode="json"),
            next_run=now,
            created_at=now,
            updated_at=now,
        )
        return await self.repo.add_schedule(schedule)

    async def provision_default_schedules(self, tenant_id: Any, now: datetime | None = None) -> list[SyncSchedule]:
        """Create the three default schedules a tenant lacks. Idempotent."""
        existing = {s.job_type for s in await self.repo.list_schedules(tenant_id)}
        created = []
        for job_type, defaults in DEFAULT_SCHEDULES.items():
            if job_type in existing:
                continue
            created.append(
                await self.create_schedule(
                    tenant_id,
                    name=DEFAULT_SCHEDULE_NAMES[job_type],
                    job_type=job_type,
                    platform="all",
                    interval_minutes=defaults["interval_minutes"],
                    priority=defaults["priority"],
                    max_retries=defaults["max_retries"],
                    now=now,
                )
            )
        if created:
            logger.info("scheduler.defaults_provisioned", tenant_id=str(tenant_id), created=len(created))
        return created

    async def get_scheduler_analytics(self, tenant_id: Any, now: datetime | None = None) -> dict[str, Any]:
        """Job counts over the last 24h, active schedules, failures over 7 days."""
        now = now or utc_now()
        jobs = await self.repo.job_stats_since(tenant_id, now - timedelta(hours=24))
        schedules = [s for s in await self.repo.list_schedules(tenant_id) if s.enabled]
        failures = await self.repo.operations_since("job_failed", now - timedelta(days=7), tenant_id=tenant_id)

        by_status = Counter(status for status, _, _ in jobs)
        by_type = Counter(job_type for _, job_type, _ in jobs)
        by_platform = Counter(platform for _, _, platform in jobs)
        return {
            "job_stats": {
                "total_jobs_24h": len(jobs),
                "by_status": {s: by_status.get(s, 0) for s in ("pending", "running", "completed", "failed", "cancelled")},
                "by_type": {t: by_type.get(t, 0) for t in JOB_TYPES},
                "by_platform": {p: by_platform.get(p, 0) for p in JOB_PLATFORMS},
            },
            "schedule_stats": {
                "active_schedules": len(schedules),
                "schedules": [
                    {
                        "schedule_id": str(s.schedule_id),
                        "name": s.name,
                        "job_type": s.job_type,
                        "platform": s.platform,
                        "next_run": s.next_run.isoformat() if s.next_run else None,
                        "failure_count": s.failure_count,
                    }
                    for s in schedules
                ],
            },
            "error_analysis": {
                "total_errors_7d": len(failures),
                "common_errors": dict(Counter(f.message for f in failures).most_common()),
            },
            "generated_at": now.isoformat(),
        }


@dataclass
class JobDecision:
    retry: RetryDecision
    notifications: list = field(default_factory=list)
    schedule_disabled: bool = False


def _validate_job_fields(job_type: str, platform: str, priority: str) -> None:
    if job_type not in JOB_TYPES:
        raise PermanentFailure(f"Unknown job type: {job_type}")
    if platform not in JOB_PLATFORMS:
        raise PermanentFailure(f"Unknown platform: {platform}")
    if priority not in JOB_PRIORITIES:
        raise PermanentFailure(f"Unknown priority: {priority}")


def build_scheduler(
    db,
    rate_limiter,
    settings: Settings | None = None,
    send_task: Callable[..., Any] | None = None,
    credential_store=None,
    adapter_factory=None,
) -> JobScheduler:
    """Wire repository, executor and retry coordinator around one session."""
    from integrations.base import get_adapter
    from integrations.credentials import DatabaseCredentialStore

    settings = settings or get_settings()
    repo = SyncRepository(db)
    alert_policy = AlertPolicy.from_settings(settings)
    executor = SyncJobExecutor(
        repo,
        credential_store=credential_store or DatabaseCredentialStore(db),
        rate_limiter=rate_limiter,
        adapter_factory=adapter_factory or get_adapter,
        alert_policy=alert_policy,
        settings=settings,
    )
    return JobScheduler(
        repo,
        executor=executor,
        retry_coordinator=RetryCoordinator(
            repo,
            base_delay_minutes=settings.retry_base_delay_minutes,
            alert_policy=alert_policy,
        ),
        settings=settings,
        alert_policy=alert_policy,
        send_task=send_task,
    )
