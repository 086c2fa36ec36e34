"""Cron scheduling for the pipeline jobs.

Wraps APScheduler's AsyncIOScheduler. Every job sits behind its own
ExecutionCoordinator; a cron fire only launches the coordinator's background
task and returns, so the scheduler itself never blocks on job work.
"""

import functools
from dataclasses import dataclass
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpulse.config import settings
from ticketpulse.schemas.jobs import ExecutionContext, JobStatusResponse, TriggerResult, TriggerSource
from ticketpulse.services.audit_log import AuditLogWriter
from ticketpulse.services.helpdesk_client import HelpdeskCollaborator
from ticketpulse.services.retention import RetentionEngine
from ticketpulse.services.secure_config import SecureConfigStore
from ticketpulse.services.snapshot_writer import SnapshotWriter
from ticketpulse.services.sync import IncrementalSyncOrchestrator
from ticketpulse.worker.coordinator import ExecutionCoordinator
from ticketpulse.worker.ingestion_worker import run_weekly_ingestion
from ticketpulse.worker.retention_worker import (
    run_aggregate_purge,
    run_snapshot_retention,
    run_ticket_compression,
)

log = structlog.get_logger()

WEEKLY_INGESTION = "weekly_ingestion"
SNAPSHOT_RETENTION = "snapshot_retention"
TICKET_COMPRESSION = "ticket_compression"
AGGREGATE_PURGE = "aggregate_purge"

# Crontab numbers Sunday as 0 (and 7); APScheduler 3 numbers Monday as 0.
_CRONTAB_DAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _crontab_day(token: str) -> str:
    return _CRONTAB_DAYS[int(token)] if token.isdigit() else token


def _translate_day_of_week(field: str) -> str:
    parts = []
    for part in field.split(","):
        base, slash, step = part.partition("/")
        base = "-".join(_crontab_day(token) for token in base.split("-"))
        parts.append(f"{base}{slash}{step}")
    return ",".join(parts)


def cron_trigger(expr: str, timezone: str) -> CronTrigger:
    """Build a CronTrigger from a standard five-field crontab expression."""
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression: {expr!r}")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_translate_day_of_week(day_of_week),
        timezone=timezone,
    )


@dataclass
class ScheduledJob:
    coordinator: ExecutionCoordinator
    cron: str


class JobScheduler:
    def __init__(self, jobs: dict[str, ScheduledJob], timezone: Optional[str] = None):
        self._jobs = jobs
        self.timezone = timezone or settings.scheduler_timezone
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def coordinator(self, name: str) -> ExecutionCoordinator:
        return self._jobs[name].coordinator

    def start(self) -> None:
        if self.is_running():
            return
        scheduler = AsyncIOScheduler(timezone=self.timezone)
        for name, job in self._jobs.items():
            scheduler.add_job(
                self._fire,
                trigger=cron_trigger(job.cron, self.timezone),
                args=[name],
                id=name,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=300,
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        log.info("scheduler_started", timezone=self.timezone, jobs=self.job_names)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        log.info("scheduler_stopped")

    async def drain(self) -> None:
        """Wait for every in-flight job run. Call after stop() and before disposing the engine."""
        for job in self._jobs.values():
            await job.coordinator.drain()

    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def is_job_running(self, name: str) -> bool:
        return self.coordinator(name).is_running()

    def next_run_time(self, name: str):
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(name)
        return job.next_run_time if job else None

    def status(self) -> list[JobStatusResponse]:
        return [
            JobStatusResponse(
                name=name,
                running=job.coordinator.is_running(),
                schedule=job.cron,
                next_run_time=self.next_run_time(name),
            )
            for name, job in self._jobs.items()
        ]

    async def _fire(self, name: str) -> None:
        self.coordinator(name).launch(TriggerSource.scheduled)

    def trigger(
        self, name: str, source: TriggerSource = TriggerSource.manual
    ) -> Optional[ExecutionContext]:
        """Launch a job in the background. Manual triggers raise AlreadyRunningError if busy."""
        return self.coordinator(name).launch(source)

    async def run_now(
        self, name: str, source: TriggerSource = TriggerSource.manual
    ) -> TriggerResult:
        return await self.coordinator(name).trigger(source)


def build_job_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    config_store: SecureConfigStore,
    collaborator: HelpdeskCollaborator,
) -> JobScheduler:
    audit = AuditLogWriter(session_factory)
    sync = IncrementalSyncOrchestrator(session_factory, config_store, collaborator)
    writer = SnapshotWriter(session_factory)
    engine = RetentionEngine(session_factory)

    def coordinator(name, body):
        return ExecutionCoordinator(name, body, session_factory, audit=audit)

    jobs = {
        WEEKLY_INGESTION: ScheduledJob(
            coordinator(
                WEEKLY_INGESTION,
                functools.partial(run_weekly_ingestion, sync=sync, writer=writer),
            ),
            settings.weekly_ingestion_cron,
        ),
        SNAPSHOT_RETENTION: ScheduledJob(
            coordinator(
                SNAPSHOT_RETENTION,
                functools.partial(run_snapshot_retention, engine=engine, audit=audit),
            ),
            settings.snapshot_retention_cron,
        ),
        TICKET_COMPRESSION: ScheduledJob(
            coordinator(
                TICKET_COMPRESSION,
                functools.partial(run_ticket_compression, engine=engine, audit=audit),
            ),
            settings.ticket_compression_cron,
        ),
        AGGREGATE_PURGE: ScheduledJob(
            coordinator(
                AGGREGATE_PURGE,
                functools.partial(run_aggregate_purge, engine=engine, audit=audit),
            ),
            settings.aggregate_purge_cron,
        ),
    }
    return JobScheduler(jobs)
