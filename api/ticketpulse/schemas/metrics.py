"""Weekly metric schemas handed from the metrics calculator to the snapshot writer."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class PriorityBreakdown(BaseModel):
    urgent: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0


class GroupResolutionStats(BaseModel):
    group_id: int
    group_name: str
    tickets_resolved: int = 0
    tickets_open: int = 0
    tickets_pending: int = 0


class CustomerMaxTickets(BaseModel):
    company_id: int
    company_name: str
    ticket_count: int


class UnresolvedSnapshot(BaseModel):
    """Open work for the two escalation groups at snapshot time."""

    se_open: int = 0
    se_pending: int = 0
    ps_open: int = 0
    ps_pending: int = 0
    ps_marked_for_release: int = 0


class WeeklyMetrics(BaseModel):
    snapshot_id: str
    week_start: datetime
    week_end: datetime
    tickets_created: int
    tickets_resolved: int
    tickets_closed: int
    priority: PriorityBreakdown = Field(default_factory=PriorityBreakdown)
    group_resolutions: list[GroupResolutionStats] = Field(default_factory=list)
    customer_max_tickets: Optional[CustomerMaxTickets] = None
    unresolved: UnresolvedSnapshot = Field(default_factory=UnresolvedSnapshot)
    average_resolution_hours: Optional[float] = None
