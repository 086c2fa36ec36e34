"""Weekly ingestion job.

Sync from the helpdesk (full or incremental), compute the week's metrics
and persist the snapshot. Runs under an ExecutionCoordinator, which owns the
ledger row and the single-flight guard.
"""

import structlog

from ticketpulse.schemas.jobs import ExecutionContext, JobOutcome
from ticketpulse.services.metrics import compute_weekly_metrics
from ticketpulse.services.periods import snapshot_id_for, week_boundaries
from ticketpulse.services.snapshot_writer import SnapshotWriter
from ticketpulse.services.sync import IncrementalSyncOrchestrator

log = structlog.get_logger()


async def run_weekly_ingestion(
    context: ExecutionContext,
    sync: IncrementalSyncOrchestrator,
    writer: SnapshotWriter,
    force: bool = False,
) -> JobOutcome:
    week_start, week_end = week_boundaries(context.executed_at)
    snapshot_id = snapshot_id_for(week_end)
    log.info(
        "snapshot_boundaries_calculated",
        snapshot_id=snapshot_id,
        week_start=week_start.isoformat(),
        week_end=week_end.isoformat(),
    )

    synced = await sync.run()
    metrics = compute_weekly_metrics(
        snapshot_id,
        week_start,
        week_end,
        synced.tickets,
        synced.groups,
        synced.companies,
    )
    written = await writer.write(metrics, synced.tickets, force=force)

    return JobOutcome(
        snapshot_id=snapshot_id,
        counts={
            "sync_mode": synced.mode.name,
            "tickets_ingested": synced.upserted,
            "groups_ingested": len(synced.groups),
            "companies_ingested": len(synced.companies),
            "snapshot_status": written.status.value,
        },
    )
