"""Tests for snapshot expiry, ticket compression and aggregate purge."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from factories import count_rows
from ticketpulse.models.monthly_aggregate import MonthlyTicketAggregate
from ticketpulse.models.reference import CompanyCache
from ticketpulse.models.retention_audit_log import RetentionAuditLog
from ticketpulse.models.snapshot import GroupResolution, TicketSnapshot, WeeklySnapshot
from ticketpulse.models.ticket import Ticket
from ticketpulse.services.periods import add_months
from ticketpulse.services.retention import RetentionEngine, aggregate_target_id, lower_median

UTC = timezone.utc


def _engine(session_factory, clock):
    return RetentionEngine(session_factory, clock=clock, delete_batch_size=1, batch_pause_seconds=0)


async def _add(session_factory, *rows):
    async with session_factory() as session:
        session.add_all(rows)
        await session.commit()


def _ticket(external_id, created_at, company_id=None, status=4, priority=2, tags=(), hours=10):
    return Ticket(
        external_id=external_id,
        subject=f"Ticket {external_id}",
        status=status,
        priority=priority,
        company_id=company_id,
        tags=list(tags),
        created_at=created_at,
        updated_at=created_at + timedelta(hours=hours),
    )


def _snapshot(snapshot_id, week_end, expires_at):
    return WeeklySnapshot(
        snapshot_id=snapshot_id,
        week_start=week_end - timedelta(days=7),
        week_end=week_end,
        created_at=week_end,
        timezone="UTC",
        version=1,
        tickets_created=1,
        tickets_resolved=1,
        tickets_closed=0,
        priority_urgent=0,
        priority_high=0,
        priority_medium=1,
        priority_low=0,
        expires_at=expires_at,
    )


def _children(snapshot_id):
    return [
        GroupResolution(
            snapshot_id=snapshot_id,
            group_id=1,
            group_name="Support Engineers",
            tickets_resolved=1,
            tickets_open=0,
            tickets_pending=0,
        ),
        TicketSnapshot(
            snapshot_id=snapshot_id,
            external_id=1,
            subject="Ticket 1",
            status=4,
            priority=2,
            created_at=datetime(2024, 1, 1, tzinfo=UTC),
            updated_at=datetime(2024, 1, 2, tzinfo=UTC),
            tags=[],
        ),
    ]


async def _audit(session_factory, action=None):
    async with session_factory() as session:
        stmt = select(RetentionAuditLog).order_by(RetentionAuditLog.target_id)
        if action is not None:
            stmt = stmt.where(RetentionAuditLog.action == action)
        return list((await session.execute(stmt)).scalars().all())


def test_lower_median():
    assert lower_median([]) is None
    assert lower_median([5.0]) == 5.0
    assert lower_median([3.0, 1.0, 2.0]) == 2.0
    assert lower_median([4.0, 1.0, 3.0, 2.0]) == 2.0


def test_aggregate_target_id():
    assert aggregate_target_id((2024, 4, 10)) == "2024-04:10"
    assert aggregate_target_id((2024, 4, None)) == "2024-04:none"


# -- snapshot expiry -----------------------------------------------------


@pytest.fixture
async def snapshots(session_factory, clock):
    now = clock.now
    old_end = add_months(now, -14)
    soon_end = add_months(now, -12) - timedelta(days=10)
    fresh_end = add_months(now, -1)
    rows = [
        _snapshot("snapshot_old", old_end, add_months(old_end, 13)),
        _snapshot("snapshot_soon", soon_end, add_months(soon_end, 13)),
        _snapshot("snapshot_fresh", fresh_end, add_months(fresh_end, 13)),
    ]
    await _add(session_factory, *rows)
    await _add(
        session_factory,
        *_children("snapshot_old"),
        *_children("snapshot_soon"),
        *_children("snapshot_fresh"),
    )
    return rows


async def test_scan_classifies_snapshots(session_factory, clock, snapshots):
    scan = await _engine(session_factory, clock).scan_snapshots()

    assert [e.snapshot_id for e in scan.expired] == ["snapshot_old"]
    assert [e.snapshot_id for e in scan.expiring_soon] == ["snapshot_soon"]
    assert 0 < scan.expiring_soon[0].days_until_deletion <= 31


async def test_snapshot_dry_run_mutates_nothing(session_factory, clock, snapshots):
    result = await _engine(session_factory, clock).delete_expired_snapshots(dry_run=True)

    assert result.would_delete == ["snapshot_old"]
    assert result.deleted == []
    assert await count_rows(session_factory, WeeklySnapshot) == 3
    assert await _audit(session_factory) == []


async def test_expired_snapshot_deleted_with_children_and_audit(session_factory, clock, snapshots):
    result = await _engine(session_factory, clock).delete_expired_snapshots()

    assert result.deleted == ["snapshot_old"]
    assert result.errors == []
    assert await count_rows(session_factory, WeeklySnapshot) == 2
    assert await count_rows(session_factory, TicketSnapshot) == 2
    assert await count_rows(session_factory, GroupResolution) == 2

    audit = await _audit(session_factory)
    assert len(audit) == 1
    assert audit[0].target_type == "weekly_snapshot"
    assert audit[0].target_id == "snapshot_old"
    assert audit[0].action == "DELETE"
    assert audit[0].details == "Automatic deletion after 13 months + 7 day grace period"


async def test_snapshot_past_grace_period_is_expired_even_if_expiry_not_reached(
    session_factory, clock
):
    week_end = add_months(clock.now, -13) - timedelta(days=8)
    # expires_at pushed out, but the hard age limit still applies
    await _add(session_factory, _snapshot("snapshot_stale", week_end, clock.now + timedelta(days=30)))

    result = await _engine(session_factory, clock).delete_expired_snapshots()

    assert result.deleted == ["snapshot_stale"]


# -- ticket compression --------------------------------------------------


@pytest.fixture
async def aged_tickets(session_factory, clock):
    fourteen_months_ago = add_months(clock.now, -14)  # 2024-04-15
    await _add(
        session_factory,
        CompanyCache(external_id=10, name="Acme"),
        _ticket(1, fourteen_months_ago, company_id=10, status=4, priority=4, tags=["data-loss"], hours=10),
        _ticket(2, fourteen_months_ago + timedelta(days=5), company_id=10, status=3, priority=1, hours=30),
        _ticket(3, fourteen_months_ago - timedelta(days=10), company_id=None, status=5, tags=["how-to"]),
        _ticket(4, add_months(clock.now, -1), company_id=10),
        _ticket(5, add_months(clock.now, -40), company_id=10),
    )


async def _aggregates(session_factory):
    async with session_factory() as session:
        rows = (await session.execute(select(MonthlyTicketAggregate))).scalars().all()
    return {(a.year, a.month, a.partner_id): a for a in rows}


async def test_compression_dry_run_mutates_nothing(session_factory, clock, aged_tickets):
    result = await _engine(session_factory, clock).compress_tickets(dry_run=True)

    assert result.dry_run
    assert result.eligible_tickets == 3
    assert [(g.year, g.month, g.partner_id, g.ticket_count) for g in result.groups] == [
        (2024, 4, 10, 2),
        (2024, 4, None, 1),
    ]
    assert result.groups[0].partner_name == "Acme"
    assert await count_rows(session_factory, Ticket) == 5
    assert await count_rows(session_factory, MonthlyTicketAggregate) == 0
    assert await _audit(session_factory) == []


async def test_fourteen_month_old_tickets_are_compressed(session_factory, clock, aged_tickets):
    result = await _engine(session_factory, clock).compress_tickets()

    assert result.aggregates_written == 2
    assert result.tickets_deleted == result.compressed_from_total == 3

    aggregates = await _aggregates(session_factory)
    acme = aggregates[(2024, 4, 10)]
    assert acme.partner_name == "Acme"
    assert acme.total_tickets == 2
    assert acme.compressed_from_count == 2
    assert acme.open_tickets == 1  # pending counts as open
    assert acme.resolved_tickets == 1
    assert acme.priority_urgent == 1
    assert acme.priority_low == 1
    assert acme.data_loss_tickets == 1
    assert acme.avg_resolution_hours == pytest.approx(20.0)
    assert acme.median_resolution_hours == pytest.approx(10.0)

    unassigned = aggregates[(2024, 4, None)]
    assert unassigned.partner_name is None
    assert unassigned.closed_tickets == 1
    assert unassigned.how_to_tickets == 1

    async with session_factory() as session:
        remaining = (await session.execute(select(Ticket.external_id))).scalars().all()
    # recent ticket kept at full resolution; tickets past the horizon are not compressed
    assert sorted(remaining) == [4, 5]


async def test_compression_audit_matches_deleted_rows(session_factory, clock, aged_tickets):
    await _engine(session_factory, clock).compress_tickets()

    audit = await _audit(session_factory, action="COMPRESS")
    per_target = {}
    for row in audit:
        assert row.target_type == "ticket_batch"
        per_target[row.target_id] = per_target.get(row.target_id, 0) + row.record_count
    assert per_target == {"2024-04:10": 2, "2024-04:none": 1}


async def test_compression_is_idempotent(session_factory, clock, aged_tickets):
    engine = _engine(session_factory, clock)
    await engine.compress_tickets()

    again = await engine.compress_tickets()

    assert again.eligible_tickets == 0
    assert again.aggregates_written == 0
    assert await count_rows(session_factory, MonthlyTicketAggregate) == 2


async def test_null_partner_aggregate_is_updated_not_duplicated(session_factory, clock, aged_tickets):
    await _add(
        session_factory,
        MonthlyTicketAggregate(year=2024, month=4, partner_id=None, total_tickets=99),
    )

    await _engine(session_factory, clock).compress_tickets()

    async with session_factory() as session:
        rows = (
            await session.execute(
                select(MonthlyTicketAggregate).where(MonthlyTicketAggregate.partner_id.is_(None))
            )
        ).scalars().all()
    assert len(rows) == 1
    assert rows[0].total_tickets == 100
    assert rows[0].compressed_from_count == 1


async def test_month_is_compressed_only_once_complete(session_factory, clock):
    june = datetime(2024, 6, 1, 9, 0, tzinfo=UTC)
    await _add(
        session_factory,
        _ticket(1, june, company_id=7),
        _ticket(2, june, company_id=7),
        _ticket(3, june + timedelta(days=24), company_id=7),
    )
    engine = _engine(session_factory, clock)

    # 2025-06-15: June 2024 is still inside the full-resolution window
    first = await engine.compress_tickets()
    assert first.tickets_deleted == 0

    clock.advance(days=30)
    second = await engine.compress_tickets()

    assert second.tickets_deleted == 3
    aggregates = await _aggregates(session_factory)
    assert aggregates[(2024, 6, 7)].total_tickets == 3
    assert aggregates[(2024, 6, 7)].compressed_from_count == 3
    assert await count_rows(session_factory, Ticket) == 0


async def test_late_ticket_merges_into_existing_aggregate(session_factory, clock, aged_tickets):
    engine = _engine(session_factory, clock)
    await engine.compress_tickets()

    # an incremental sync brings back a ticket from an already-compressed month
    await _add(
        session_factory,
        _ticket(6, datetime(2024, 4, 28, tzinfo=UTC), company_id=10, priority=4, hours=50),
    )
    again = await engine.compress_tickets()

    assert again.tickets_deleted == 1
    acme = (await _aggregates(session_factory))[(2024, 4, 10)]
    assert acme.total_tickets == 3
    assert acme.compressed_from_count == 3
    assert acme.priority_urgent == 2
    assert acme.data_loss_tickets == 1
    assert acme.avg_resolution_hours == pytest.approx(30.0)
    assert acme.partner_name == "Acme"

    stats = await engine.retention_stats()
    assert stats.compressed_tickets == 4


# -- aggregate purge -----------------------------------------------------


@pytest.fixture
async def aggregates(session_factory):
    await _add(
        session_factory,
        MonthlyTicketAggregate(year=2022, month=5, partner_id=10, total_tickets=4),
        MonthlyTicketAggregate(year=2022, month=6, partner_id=10, total_tickets=5),
        MonthlyTicketAggregate(year=2024, month=1, partner_id=None, total_tickets=6),
    )


async def test_purge_dry_run(session_factory, clock, aggregates):
    result = await _engine(session_factory, clock).purge_aggregates(dry_run=True)

    assert (result.cutoff_year, result.cutoff_month) == (2022, 6)
    assert result.aggregates_found == 1
    assert result.aggregates_deleted == 0
    assert await count_rows(session_factory, MonthlyTicketAggregate) == 3


async def test_purge_removes_aggregates_past_horizon(session_factory, clock, aggregates):
    result = await _engine(session_factory, clock).purge_aggregates()

    assert result.aggregates_deleted == 1
    remaining = await _aggregates(session_factory)
    assert set(remaining) == {(2022, 6, 10), (2024, 1, None)}

    audit = await _audit(session_factory, action="PURGE")
    assert len(audit) == 1
    assert audit[0].target_id == "before:2022-06"
    assert audit[0].record_count == 1


async def test_purge_with_nothing_to_do_writes_no_audit(session_factory, clock):
    result = await _engine(session_factory, clock).purge_aggregates()

    assert result.aggregates_found == 0
    assert await _audit(session_factory) == []


# -- reporting -----------------------------------------------------------


async def test_stats_and_audit_entries(session_factory, clock, aged_tickets, snapshots):
    engine = _engine(session_factory, clock)
    await engine.compress_tickets()
    await engine.delete_expired_snapshots()

    stats = await engine.retention_stats()
    assert stats.full_resolution_tickets == 2
    assert stats.compressed_months == 1
    assert stats.compressed_tickets == 3
    assert stats.snapshot_count == 2
    assert stats.oldest_ticket_at == add_months(clock.now, -40)

    entries = await engine.audit_entries(target_id="snapshot_old")
    assert [(e.action, e.record_count) for e in entries] == [("DELETE", 1)]
    assert len(await engine.audit_entries(limit=2)) == 2
