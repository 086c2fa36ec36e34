from fastapi import APIRouter, HTTPException, Query

from ticketpulse.dependencies import Snapshots
from ticketpulse.models.snapshot import WeeklySnapshot
from ticketpulse.schemas.snapshot import SnapshotResponse

router = APIRouter(prefix="/api/v1/snapshots", tags=["snapshots"])


@router.get("", response_model=list[SnapshotResponse])
async def list_snapshots(
    writer: Snapshots,
    limit: int = Query(52, ge=1, le=260),
) -> list[WeeklySnapshot]:
    return await writer.list_recent(limit)


@router.get("/{snapshot_id}", response_model=SnapshotResponse)
async def get_snapshot(snapshot_id: str, writer: Snapshots) -> WeeklySnapshot:
    snapshot = await writer.get(snapshot_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Snapshot not found")
    return snapshot
