"""Retention job bodies.

Each of the three retention passes is its own job with its own schedule and
ledger rows. A summary of every run goes to the operational audit log.
"""

import structlog

from ticketpulse.errors import PersistenceError
from ticketpulse.schemas.jobs import ExecutionContext, JobOutcome
from ticketpulse.services.audit_log import AuditLogWriter
from ticketpulse.services.retention import RetentionEngine

log = structlog.get_logger()


async def run_snapshot_retention(
    context: ExecutionContext, engine: RetentionEngine, audit: AuditLogWriter
) -> JobOutcome:
    scan = await engine.scan_snapshots()
    for entry in scan.expiring_soon:
        log.warning(
            "snapshot_expiring_soon",
            snapshot_id=entry.snapshot_id,
            days_until_deletion=entry.days_until_deletion,
        )

    deletion = await engine.delete_expired_snapshots()
    counts = {
        "expiring_soon": len(scan.expiring_soon),
        "snapshots_deleted": len(deletion.deleted),
        "delete_failures": len(deletion.errors),
    }
    await audit.write(
        "RETENTION_SNAPSHOTS",
        {"job_id": context.job_id, "deleted": deletion.deleted, **counts},
    )
    if deletion.errors:
        raise PersistenceError(
            f"Failed to delete {len(deletion.errors)} expired snapshots",
            {"snapshot_ids": deletion.errors},
        )
    return JobOutcome(counts=counts)


async def run_ticket_compression(
    context: ExecutionContext, engine: RetentionEngine, audit: AuditLogWriter
) -> JobOutcome:
    result = await engine.compress_tickets()
    counts = {
        "eligible_tickets": result.eligible_tickets,
        "aggregates_written": result.aggregates_written,
        "tickets_deleted": result.tickets_deleted,
    }
    await audit.write("RETENTION_COMPRESSION", {"job_id": context.job_id, **counts})
    return JobOutcome(counts=counts)


async def run_aggregate_purge(
    context: ExecutionContext, engine: RetentionEngine, audit: AuditLogWriter
) -> JobOutcome:
    result = await engine.purge_aggregates()
    counts = {
        "cutoff": f"{result.cutoff_year:04d}-{result.cutoff_month:02d}",
        "aggregates_deleted": result.aggregates_deleted,
    }
    await audit.write("RETENTION_PURGE", {"job_id": context.job_id, **counts})
    return JobOutcome(counts=counts)
