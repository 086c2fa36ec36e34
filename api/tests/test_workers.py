"""End-to-end tests for the job bodies on an in-memory database."""

import json
from datetime import timedelta

from sqlalchemy import select

from factories import FakeHelpdesk, count_rows, make_ticket
from ticketpulse.models.audit_log import AuditLog
from ticketpulse.models.snapshot import TicketSnapshot, WeeklySnapshot
from ticketpulse.models.ticket import Ticket
from ticketpulse.schemas.helpdesk import HelpdeskCompany, HelpdeskGroup
from ticketpulse.schemas.jobs import ExecutionContext, TriggerSource
from ticketpulse.services.audit_log import AuditLogWriter
from ticketpulse.services.periods import add_months, generate_job_id
from ticketpulse.services.retention import RetentionEngine
from ticketpulse.services.snapshot_writer import SnapshotWriter
from ticketpulse.services.sync import IncrementalSyncOrchestrator
from ticketpulse.worker.ingestion_worker import run_weekly_ingestion
from ticketpulse.worker.retention_worker import run_aggregate_purge, run_ticket_compression


def _context(clock, job_name="weekly_ingestion"):
    return ExecutionContext(
        job_id=generate_job_id(clock.now),
        job_name=job_name,
        source=TriggerSource.manual,
        scheduled_at=clock.now,
        executed_at=clock.now,
    )


async def test_weekly_ingestion_is_idempotent_per_week(session_factory, store, clock):
    created = clock.now - timedelta(days=2)
    helpdesk = FakeHelpdesk(
        [make_ticket(1, created_at=created, company_id=10, group_id=1, status=4)],
        [HelpdeskGroup(id=1, name="Support Engineers")],
        [HelpdeskCompany(id=10, name="Acme")],
    )
    sync = IncrementalSyncOrchestrator(
        session_factory, store, helpdesk, clock=clock, batch_pause_seconds=0
    )
    writer = SnapshotWriter(session_factory, clock=clock)

    first = await run_weekly_ingestion(_context(clock), sync=sync, writer=writer)

    # 2025-06-15 is a Sunday; the week ends Friday 2025-06-20 17:00 IST
    assert first.snapshot_id == "snapshot_20250620"
    assert first.counts["sync_mode"] == "full"
    assert first.counts["tickets_ingested"] == 1
    assert first.counts["snapshot_status"] == "written"

    clock.advance(hours=2)
    second = await run_weekly_ingestion(_context(clock), sync=sync, writer=writer)

    assert second.snapshot_id == first.snapshot_id
    assert second.counts["sync_mode"] == "incremental"
    assert second.counts["snapshot_status"] == "already_exists"
    assert await count_rows(session_factory, WeeklySnapshot) == 1

    forced = await run_weekly_ingestion(_context(clock), sync=sync, writer=writer, force=True)
    assert forced.counts["snapshot_status"] == "overwritten"
    assert await count_rows(session_factory, WeeklySnapshot) == 1
    assert await count_rows(session_factory, TicketSnapshot) == 0


async def test_compression_job_writes_operational_audit(session_factory, clock, tmp_path):
    async with session_factory() as session:
        created = add_months(clock.now, -14)
        session.add(
            Ticket(
                external_id=1,
                subject="Old",
                status=4,
                priority=2,
                tags=[],
                created_at=created,
                updated_at=created + timedelta(hours=3),
            )
        )
        await session.commit()
    engine = RetentionEngine(session_factory, clock=clock, batch_pause_seconds=0)
    audit = AuditLogWriter(session_factory, fallback_path=str(tmp_path / "audit.log"))

    outcome = await run_ticket_compression(_context(clock), engine=engine, audit=audit)
    purge = await run_aggregate_purge(_context(clock), engine=engine, audit=audit)

    assert outcome.counts == {"eligible_tickets": 1, "aggregates_written": 1, "tickets_deleted": 1}
    assert purge.counts == {"cutoff": "2022-06", "aggregates_deleted": 0}
    async with session_factory() as session:
        actions = (await session.execute(select(AuditLog.action))).scalars().all()
    assert sorted(actions) == ["RETENTION_COMPRESSION", "RETENTION_PURGE"]


async def test_audit_writer_falls_back_to_file(tmp_path):
    def broken_factory():
        raise RuntimeError("database is down")

    fallback = tmp_path / "audit.log"
    writer = AuditLogWriter(broken_factory, fallback_path=str(fallback))

    assert await writer.write("RETENTION_PURGE", {"deleted": 2}) is False

    record = json.loads(fallback.read_text().strip())
    assert record["action"] == "RETENTION_PURGE"
    assert record["details"] == {"deleted": 2}
    assert "database is down" in record["error"]
