"""Retention router: dry-run preview, stats and the retention audit trail."""

from typing import Optional

from fastapi import APIRouter, Query

from ticketpulse.dependencies import Retention
from ticketpulse.schemas.retention import RetentionAuditEntry, RetentionPreview, RetentionStats

router = APIRouter(prefix="/api/v1/retention", tags=["retention"])


@router.get("/preview", response_model=RetentionPreview)
async def preview(engine: Retention) -> RetentionPreview:
    """Dry-run all three passes. Never mutates anything."""
    return RetentionPreview(
        snapshots=await engine.delete_expired_snapshots(dry_run=True),
        compression=await engine.compress_tickets(dry_run=True),
        purge=await engine.purge_aggregates(dry_run=True),
        stats=await engine.retention_stats(),
    )


@router.get("/stats", response_model=RetentionStats)
async def stats(engine: Retention) -> RetentionStats:
    return await engine.retention_stats()


@router.get("/audit", response_model=list[RetentionAuditEntry])
async def audit_log(
    engine: Retention,
    target_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
) -> list[RetentionAuditEntry]:
    return await engine.audit_entries(target_id=target_id, limit=limit)
