"""Tests for idempotent snapshot persistence."""

from datetime import datetime, timezone

from sqlalchemy import select

from factories import count_rows, make_ticket
from ticketpulse.models.snapshot import GroupResolution, TicketSnapshot, WeeklySnapshot
from ticketpulse.schemas.helpdesk import HelpdeskCompany, HelpdeskGroup
from ticketpulse.services.metrics import compute_weekly_metrics
from ticketpulse.services.periods import add_months
from ticketpulse.services.snapshot_writer import SnapshotWriter, WriteStatus

UTC = timezone.utc
WEEK_START = datetime(2025, 6, 6, 11, 30, tzinfo=UTC)
WEEK_END = datetime(2025, 6, 13, 11, 30, tzinfo=UTC)
SNAPSHOT_ID = "snapshot_20250613"

GROUPS = [HelpdeskGroup(id=1, name="Support Engineers"), HelpdeskGroup(id=2, name="Billing")]
COMPANIES = [HelpdeskCompany(id=10, name="Acme")]


def _metrics(tickets):
    return compute_weekly_metrics(SNAPSHOT_ID, WEEK_START, WEEK_END, tickets, GROUPS, COMPANIES)


def _tickets(count, group_id=1):
    created = datetime(2025, 6, 10, tzinfo=UTC)
    return [
        make_ticket(i, group_id=group_id, company_id=10, status=4, created_at=created)
        for i in range(1, count + 1)
    ]


async def _children(session_factory, model):
    async with session_factory() as session:
        result = await session.execute(select(model).where(model.snapshot_id == SNAPSHOT_ID))
        return list(result.scalars().all())


async def test_first_write_persists_snapshot_and_children(session_factory, clock):
    writer = SnapshotWriter(session_factory, clock=clock, raw_batch_size=2)
    tickets = _tickets(5)

    result = await writer.write(_metrics(tickets), tickets)

    assert result.status == WriteStatus.written
    assert result.version == 1
    assert result.ticket_rows == 5
    assert result.expires_at == add_months(clock.now, 13)
    assert await writer.exists(SNAPSHOT_ID)
    assert len(await _children(session_factory, TicketSnapshot)) == 5
    groups = await _children(session_factory, GroupResolution)
    assert [(g.group_name, g.tickets_resolved) for g in groups] == [("Support Engineers", 5)]


async def test_second_write_is_a_noop(session_factory, clock):
    writer = SnapshotWriter(session_factory, clock=clock)
    await writer.write(_metrics(_tickets(3)), _tickets(3))

    clock.advance(hours=1)
    result = await writer.write(_metrics(_tickets(8)), _tickets(8))

    assert result.already_exists
    assert result.version == 1
    assert await count_rows(session_factory, WeeklySnapshot) == 1
    assert len(await _children(session_factory, TicketSnapshot)) == 3
    snapshot = await writer.get(SNAPSHOT_ID)
    assert snapshot.tickets_resolved == 3


async def test_force_overwrite_replaces_children_and_bumps_version(session_factory, clock):
    writer = SnapshotWriter(session_factory, clock=clock)
    await writer.write(_metrics(_tickets(3)), _tickets(3))

    replacement = _tickets(2, group_id=2)
    result = await writer.write(_metrics(replacement), replacement, force=True)

    assert result.status == WriteStatus.overwritten
    assert result.version == 2
    assert await count_rows(session_factory, WeeklySnapshot) == 1
    # no orphans from the first version
    assert await count_rows(session_factory, TicketSnapshot) == 2
    groups = await _children(session_factory, GroupResolution)
    assert [g.group_name for g in groups] == ["Billing"]
    snapshot = await writer.get(SNAPSHOT_ID)
    assert snapshot.version == 2
    assert snapshot.tickets_resolved == 2


async def test_snapshot_row_carries_weekly_metrics(session_factory, clock):
    writer = SnapshotWriter(session_factory, clock=clock)
    tickets = _tickets(2) + [make_ticket(99, group_id=1, status=2, priority=4)]

    await writer.write(_metrics(tickets), tickets)

    snapshot = await writer.get(SNAPSHOT_ID)
    assert snapshot.priority_urgent == 1
    assert snapshot.se_unresolved_open == 1
    assert snapshot.customer_max_tickets_company_name == "Acme"
    assert snapshot.customer_max_tickets_count == 2


async def test_list_recent_newest_first(session_factory, clock):
    writer = SnapshotWriter(session_factory, clock=clock)
    await writer.write(_metrics([]), [])
    older = compute_weekly_metrics(
        "snapshot_20250606",
        datetime(2025, 5, 30, 11, 30, tzinfo=UTC),
        WEEK_START,
        [],
        GROUPS,
        COMPANIES,
    )
    await writer.write(older, [])

    recent = await writer.list_recent(limit=10)

    assert [s.snapshot_id for s in recent] == [SNAPSHOT_ID, "snapshot_20250606"]
    assert await writer.get("snapshot_19990101") is None
