from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ticketpulse.database import get_db
from ticketpulse.services.retention import RetentionEngine
from ticketpulse.services.snapshot_writer import SnapshotWriter
from ticketpulse.worker.scheduler import JobScheduler


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


def get_retention_engine(request: Request) -> RetentionEngine:
    return request.app.state.retention_engine


def get_snapshot_writer(request: Request) -> SnapshotWriter:
    return request.app.state.snapshot_writer


DbSession = Annotated[AsyncSession, Depends(get_db)]
Scheduler = Annotated[JobScheduler, Depends(get_scheduler)]
Retention = Annotated[RetentionEngine, Depends(get_retention_engine)]
Snapshots = Annotated[SnapshotWriter, Depends(get_snapshot_writer)]
