"""Schemas for coordinated job runs and the operator endpoints."""

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TriggerSource(str, enum.Enum):
    scheduled = "scheduled"
    manual = "manual"


class ExecutionContext(BaseModel):
    """Per-invocation context. Built fresh for every run and never mutated."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    job_name: str
    source: TriggerSource
    scheduled_at: datetime
    executed_at: datetime
    is_retry: bool = False
    retry_count: int = 0


class JobOutcome(BaseModel):
    """What a job body reports back to its coordinator."""

    snapshot_id: Optional[str] = None
    counts: dict[str, Any] = Field(default_factory=dict)


class TriggerResult(BaseModel):
    status: str  # completed | failed | skipped
    job_name: str
    job_id: Optional[str] = None
    snapshot_id: Optional[str] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    counts: dict[str, Any] = Field(default_factory=dict)


class JobExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    job_id: str
    job_name: str
    trigger_source: str
    status: str
    snapshot_id: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    counts: Optional[dict] = None


class JobStatusResponse(BaseModel):
    name: str
    running: bool
    schedule: str
    next_run_time: Optional[datetime] = None


class JobAccepted(BaseModel):
    """Immediate response after a manual trigger is accepted."""

    job_id: str
    job_name: str
    status: str = "accepted"
