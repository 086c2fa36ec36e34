"""Result schemas for the three retention passes."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SnapshotExpiryEntry(BaseModel):
    snapshot_id: str
    week_end: datetime
    expires_at: datetime
    days_until_deletion: int


class SnapshotScanResult(BaseModel):
    scanned_at: datetime
    expiring_soon: list[SnapshotExpiryEntry] = Field(default_factory=list)
    expired: list[SnapshotExpiryEntry] = Field(default_factory=list)


class SnapshotDeletionResult(BaseModel):
    dry_run: bool
    deleted: list[str] = Field(default_factory=list)
    would_delete: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class AggregateGroupPreview(BaseModel):
    year: int
    month: int
    partner_id: Optional[int] = None
    partner_name: Optional[str] = None
    ticket_count: int


class CompressionResult(BaseModel):
    dry_run: bool
    window_start: datetime
    window_end: datetime
    eligible_tickets: int = 0
    groups: list[AggregateGroupPreview] = Field(default_factory=list)
    aggregates_written: int = 0
    tickets_deleted: int = 0
    compressed_from_total: int = 0


class PurgeResult(BaseModel):
    dry_run: bool
    cutoff_year: int
    cutoff_month: int
    aggregates_found: int = 0
    aggregates_deleted: int = 0


class RetentionStats(BaseModel):
    full_resolution_tickets: int
    oldest_ticket_at: Optional[datetime] = None
    newest_ticket_at: Optional[datetime] = None
    compressed_months: int
    compressed_tickets: int
    snapshot_count: int


class RetentionAuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    target_type: str
    target_id: str
    action: str
    details: str
    record_count: int
    executed_at: datetime


class RetentionPreview(BaseModel):
    snapshots: SnapshotDeletionResult
    compression: CompressionResult
    purge: PurgeResult
    stats: RetentionStats
