"""Single-flight execution coordinator.

One coordinator per job. It owns the job's in-process running guard, builds
a fresh ExecutionContext per invocation, writes the job-execution ledger row
at start and finishes it exactly once at the end. The guard is released in a
``finally`` block so no exit path can leave the job locked.

Failures are recorded and logged, never retried here; the next scheduled
tick is the retry. The guard is process-local: it assumes a single running
instance of the service. It is also per job, not process-wide: two different
jobs (say ingestion and ticket compression) may run at the same time, while
a second run of the same job is skipped or rejected.
"""

import asyncio
import threading
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpulse.errors import AlreadyRunningError
from ticketpulse.models.job_execution import JobExecution, JobStatus
from ticketpulse.schemas.jobs import ExecutionContext, JobOutcome, TriggerResult, TriggerSource
from ticketpulse.services.audit_log import AuditLogWriter
from ticketpulse.services.periods import generate_job_id, utcnow

log = structlog.get_logger()

JobBody = Callable[[ExecutionContext], Awaitable[JobOutcome]]


class ExecutionCoordinator:
    def __init__(
        self,
        job_name: str,
        body: JobBody,
        session_factory: async_sessionmaker[AsyncSession],
        audit: Optional[AuditLogWriter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.job_name = job_name
        self._body = body
        self._session_factory = session_factory
        self._audit = audit
        self._clock = clock
        self._guard = threading.Lock()
        self._tasks: set[asyncio.Task] = set()
        self.last_result: Optional[TriggerResult] = None

    def is_running(self) -> bool:
        return self._guard.locked()

    def _acquire(self, source: TriggerSource) -> bool:
        if self._guard.acquire(blocking=False):
            return True
        if source == TriggerSource.manual:
            log.warning("job_trigger_rejected", job_name=self.job_name)
            raise AlreadyRunningError(
                f"Job '{self.job_name}' is already running", {"job_name": self.job_name}
            )
        log.info("job_skipped_already_running", job_name=self.job_name)
        return False

    def _context(self, source: TriggerSource, scheduled_at: Optional[datetime]) -> ExecutionContext:
        now = self._clock()
        return ExecutionContext(
            job_id=generate_job_id(now),
            job_name=self.job_name,
            source=source,
            scheduled_at=scheduled_at or now,
            executed_at=now,
        )

    def _skipped(self) -> TriggerResult:
        return TriggerResult(status="skipped", job_name=self.job_name)

    async def trigger(
        self,
        source: TriggerSource,
        scheduled_at: Optional[datetime] = None,
    ) -> TriggerResult:
        """Run the job to completion in the caller's task.

        Scheduled triggers return a "skipped" result while the job is
        running; manual triggers raise AlreadyRunningError.
        """
        if not self._acquire(source):
            return self._skipped()
        return await self._execute(self._context(source, scheduled_at))

    def launch(
        self,
        source: TriggerSource,
        scheduled_at: Optional[datetime] = None,
    ) -> Optional[ExecutionContext]:
        """Claim the guard now and run the job as a background task.

        Returns the context of the launched run, or None when a scheduled
        trigger was skipped.
        """
        if not self._acquire(source):
            return None
        context = self._context(source, scheduled_at)
        try:
            task = asyncio.create_task(self._execute(context), name=context.job_id)
        except BaseException:
            self._guard.release()
            raise
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return context

    async def drain(self) -> None:
        """Wait for background runs launched by this coordinator to finish."""
        if not self._tasks:
            return
        log.info("job_drain_waiting", job_name=self.job_name, tasks=len(self._tasks))
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _execute(self, context: ExecutionContext) -> TriggerResult:
        structlog.contextvars.bind_contextvars(job_id=context.job_id, job_name=self.job_name)
        started = time.monotonic()
        try:
            log.info("job_started", source=context.source.value)
            result = await self._run(context, started)
            self.last_result = result
            return result
        finally:
            self._guard.release()
            structlog.contextvars.unbind_contextvars("job_id", "job_name")

    async def _run(self, context: ExecutionContext, started: float) -> TriggerResult:
        try:
            await self._record_start(context)
        except SQLAlchemyError as exc:
            log.error("job_ledger_start_failed", error=str(exc))
            return TriggerResult(
                status=JobStatus.failed.value,
                job_name=self.job_name,
                job_id=context.job_id,
                error=f"Could not record job start: {exc}",
            )

        if context.source == TriggerSource.manual and self._audit is not None:
            await self._audit.write(
                "JOB_TRIGGERED",
                {"job_name": self.job_name, "job_id": context.job_id},
                actor="operator",
            )

        try:
            outcome = await self._body(context)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error("job_failed", duration_ms=duration_ms, error=str(exc), exc_info=True)
            await self._record_finish(
                context, JobStatus.failed, duration_ms, JobOutcome(), error=str(exc)
            )
            return TriggerResult(
                status=JobStatus.failed.value,
                job_name=self.job_name,
                job_id=context.job_id,
                duration_ms=duration_ms,
                error=str(exc),
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        await self._record_finish(context, JobStatus.completed, duration_ms, outcome)
        log.info("job_completed", duration_ms=duration_ms, counts=outcome.counts)
        return TriggerResult(
            status=JobStatus.completed.value,
            job_name=self.job_name,
            job_id=context.job_id,
            snapshot_id=outcome.snapshot_id,
            duration_ms=duration_ms,
            counts=outcome.counts,
        )

    async def _record_start(self, context: ExecutionContext) -> None:
        async with self._session_factory() as session:
            session.add(
                JobExecution(
                    job_id=context.job_id,
                    job_name=self.job_name,
                    trigger_source=context.source.value,
                    status=JobStatus.running.value,
                    scheduled_at=context.scheduled_at,
                    started_at=context.executed_at,
                )
            )
            await session.commit()

    async def _record_finish(
        self,
        context: ExecutionContext,
        status: JobStatus,
        duration_ms: int,
        outcome: JobOutcome,
        error: Optional[str] = None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(JobExecution)
                    .where(
                        JobExecution.job_id == context.job_id,
                        JobExecution.status == JobStatus.running.value,
                    )
                    .values(
                        status=status.value,
                        snapshot_id=outcome.snapshot_id,
                        completed_at=self._clock(),
                        duration_ms=duration_ms,
                        error=error,
                        counts=outcome.counts,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            log.error("job_ledger_finish_failed", status=status.value, error=str(exc))
