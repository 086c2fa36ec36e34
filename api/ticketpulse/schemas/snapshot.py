"""Pydantic schemas for weekly snapshot responses."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    snapshot_id: str
    week_start: datetime
    week_end: datetime
    created_at: datetime
    timezone: str
    version: int
    tickets_created: int
    tickets_resolved: int
    tickets_closed: int
    priority_urgent: int
    priority_high: int
    priority_medium: int
    priority_low: int
    average_resolution_hours: Optional[float] = None
    customer_max_tickets_company_id: Optional[int] = None
    customer_max_tickets_company_name: Optional[str] = None
    customer_max_tickets_count: Optional[int] = None
    se_unresolved_open: int
    se_unresolved_pending: int
    ps_unresolved_open: int
    ps_unresolved_pending: int
    ps_unresolved_marked_for_release: int
    expires_at: datetime

