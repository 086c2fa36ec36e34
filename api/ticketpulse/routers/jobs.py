"""Jobs router: schedule status, manual triggers and the execution ledger."""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from sqlalchemy import select

from ticketpulse.dependencies import DbSession, Scheduler
from ticketpulse.errors import AlreadyRunningError
from ticketpulse.models.job_execution import JobExecution
from ticketpulse.schemas.jobs import (
    JobAccepted,
    JobExecutionResponse,
    JobStatusResponse,
    TriggerSource,
)

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.get("", response_model=list[JobStatusResponse])
async def list_jobs(scheduler: Scheduler) -> list[JobStatusResponse]:
    return scheduler.status()


@router.get("/executions", response_model=list[JobExecutionResponse])
async def list_executions(
    db: DbSession,
    job_name: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
) -> list[JobExecution]:
    """Most recent ledger rows, newest first."""
    stmt = select(JobExecution).order_by(JobExecution.started_at.desc()).limit(limit)
    if job_name is not None:
        stmt = stmt.where(JobExecution.job_name == job_name)
    result = await db.execute(stmt)
    return list(result.scalars().all())


@router.post("/{job_name}/trigger", response_model=JobAccepted, status_code=202)
async def trigger_job(job_name: str, scheduler: Scheduler) -> JobAccepted:
    """Launch a job now. Returns 409 if the same job is already running."""
    if job_name not in scheduler.job_names:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job_name}'")
    try:
        context = scheduler.trigger(job_name, TriggerSource.manual)
    except AlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return JobAccepted(job_id=context.job_id, job_name=job_name)
