"""Tiered retention and compression.

Three independent passes, each safe to schedule on its own:

1. Snapshot expiry: weekly snapshots past ``expires_at`` or older than the
   retention window plus a grace period are deleted. Snapshots past the
   notice threshold but not yet expired are reported as expiring soon.
2. Ticket compression: full-resolution tickets created between the
   compressed-retention horizon (36 months) and the full-resolution window
   (12 months) are collapsed into one MonthlyTicketAggregate per
   (year, month, partner). Only whole calendar months are compressed. A
   ticket that lands in an already-compressed month is merged into the
   existing aggregate. Source rows are deleted only after the aggregates
   are committed.
3. Aggregate purge: aggregates older than the compressed-retention horizon
   are deleted.

Every delete is paired with a RetentionAuditLog row in the same
transaction. ``dry_run=True`` computes the same result without mutating
anything.
"""

import asyncio
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpulse.config import settings
from ticketpulse.errors import PersistenceError
from ticketpulse.models.monthly_aggregate import MonthlyTicketAggregate
from ticketpulse.models.reference import CompanyCache
from ticketpulse.models.retention_audit_log import (
    RetentionAction,
    RetentionAuditLog,
    RetentionTarget,
)
from ticketpulse.models.snapshot import GroupResolution, TicketSnapshot, WeeklySnapshot
from ticketpulse.models.ticket import Ticket
from ticketpulse.schemas.retention import (
    AggregateGroupPreview,
    CompressionResult,
    PurgeResult,
    RetentionAuditEntry,
    RetentionStats,
    SnapshotDeletionResult,
    SnapshotExpiryEntry,
    SnapshotScanResult,
)
from ticketpulse.services.metrics import (
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    PRIORITY_URGENT,
    STATUS_CLOSED,
    STATUS_OPEN,
    STATUS_PENDING,
    STATUS_RESOLVED,
    resolution_hours,
)
from ticketpulse.services.periods import add_months, as_utc, month_start, utcnow

log = structlog.get_logger()

TAG_DATA_LOSS = "data-loss"
TAG_SYNC_FAILURE = "sync-failure"
TAG_HOW_TO = "how-to"
TAG_TRAINING = "training"

AggregateKey = tuple[int, int, Optional[int]]

COUNTER_COLUMNS = (
    "total_tickets",
    "open_tickets",
    "resolved_tickets",
    "closed_tickets",
    "priority_urgent",
    "priority_high",
    "priority_medium",
    "priority_low",
    "data_loss_tickets",
    "sync_failure_tickets",
    "how_to_tickets",
    "training_tickets",
    "compressed_from_count",
)


def lower_median(values: list[float]) -> Optional[float]:
    """Median without interpolation: the lower-middle element for even-sized samples."""
    if not values:
        return None
    ordered = sorted(values)
    return ordered[(len(ordered) - 1) // 2]


def merge_aggregate(existing: MonthlyTicketAggregate, values: dict) -> None:
    """Fold a newly compressed batch into an aggregate that already holds earlier tickets.

    Counters add up and the average is weighted by ticket count. The exact
    median of the combined sample is not recoverable, so the median of the
    larger batch is kept.
    """
    prior = existing.compressed_from_count or 0
    added = values["compressed_from_count"]

    if existing.avg_resolution_hours is None or prior == 0:
        existing.avg_resolution_hours = values["avg_resolution_hours"]
    elif values["avg_resolution_hours"] is not None:
        existing.avg_resolution_hours = (
            existing.avg_resolution_hours * prior + values["avg_resolution_hours"] * added
        ) / (prior + added)

    if existing.median_resolution_hours is None or added >= prior:
        existing.median_resolution_hours = values["median_resolution_hours"]

    for column in COUNTER_COLUMNS:
        setattr(existing, column, (getattr(existing, column) or 0) + values[column])
    if values["partner_name"] is not None:
        existing.partner_name = values["partner_name"]


def month_index(year: int, month: int) -> int:
    return year * 12 + month


def aggregate_target_id(key: AggregateKey) -> str:
    year, month, partner_id = key
    partner = "none" if partner_id is None else str(partner_id)
    return f"{year:04d}-{month:02d}:{partner}"


@dataclass
class _Bucket:
    """Running totals for one (year, month, partner) group."""

    year: int
    month: int
    partner_id: Optional[int]
    ticket_ids: list = field(default_factory=list)
    open: int = 0
    resolved: int = 0
    closed: int = 0
    urgent: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    data_loss: int = 0
    sync_failure: int = 0
    how_to: int = 0
    training: int = 0
    resolution_times: list = field(default_factory=list)

    @property
    def key(self) -> AggregateKey:
        return (self.year, self.month, self.partner_id)

    @property
    def total(self) -> int:
        return len(self.ticket_ids)

    def add(self, ticket: Ticket) -> None:
        self.ticket_ids.append(ticket.id)

        # pending counts as open
        if ticket.status in (STATUS_OPEN, STATUS_PENDING):
            self.open += 1
        elif ticket.status == STATUS_RESOLVED:
            self.resolved += 1
        elif ticket.status == STATUS_CLOSED:
            self.closed += 1

        if ticket.priority == PRIORITY_URGENT:
            self.urgent += 1
        elif ticket.priority == PRIORITY_HIGH:
            self.high += 1
        elif ticket.priority == PRIORITY_MEDIUM:
            self.medium += 1
        elif ticket.priority == PRIORITY_LOW:
            self.low += 1

        tags = set(ticket.tags or ())
        self.data_loss += TAG_DATA_LOSS in tags
        self.sync_failure += TAG_SYNC_FAILURE in tags
        self.how_to += TAG_HOW_TO in tags
        self.training += TAG_TRAINING in tags

        self.resolution_times.append(resolution_hours(ticket.created_at, ticket.updated_at))

    def values(self, partner_name: Optional[str]) -> dict:
        times = self.resolution_times
        return {
            "partner_name": partner_name,
            "total_tickets": self.total,
            "open_tickets": self.open,
            "resolved_tickets": self.resolved,
            "closed_tickets": self.closed,
            "avg_resolution_hours": sum(times) / len(times) if times else None,
            "median_resolution_hours": lower_median(times),
            "priority_urgent": self.urgent,
            "priority_high": self.high,
            "priority_medium": self.medium,
            "priority_low": self.low,
            "data_loss_tickets": self.data_loss,
            "sync_failure_tickets": self.sync_failure,
            "how_to_tickets": self.how_to,
            "training_tickets": self.training,
            "compressed_from_count": self.total,
        }


class RetentionEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
        delete_batch_size: Optional[int] = None,
        batch_pause_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.delete_batch_size = delete_batch_size or settings.compression_delete_batch_size
        self.batch_pause_seconds = (
            settings.batch_pause_seconds if batch_pause_seconds is None else batch_pause_seconds
        )
        self.retention_months = settings.snapshot_retention_months
        self.notice_months = settings.snapshot_notice_months
        self.grace_days = settings.snapshot_grace_days
        self.full_resolution_months = settings.full_resolution_months
        self.compressed_retention_months = settings.compressed_retention_months

    async def _pause(self) -> None:
        if self.batch_pause_seconds:
            await asyncio.sleep(self.batch_pause_seconds)

    # -- pass 1: snapshot expiry -------------------------------------------

    def _snapshot_thresholds(self, now: datetime) -> tuple[datetime, datetime]:
        notice = add_months(now, -self.notice_months)
        hard = add_months(now, -self.retention_months) - timedelta(days=self.grace_days)
        return notice, hard

    def _expiry_entry(self, snapshot: WeeklySnapshot, now: datetime) -> SnapshotExpiryEntry:
        expires_at = as_utc(snapshot.expires_at)
        days = math.ceil((expires_at - now).total_seconds() / 86400)
        return SnapshotExpiryEntry(
            snapshot_id=snapshot.snapshot_id,
            week_end=as_utc(snapshot.week_end),
            expires_at=expires_at,
            days_until_deletion=days,
        )

    async def scan_snapshots(self) -> SnapshotScanResult:
        """Classify snapshots into expiring-soon and expired. Read-only."""
        now = self._clock()
        notice, hard = self._snapshot_thresholds(now)

        async with self._session_factory() as session:
            expired_rows = (
                await session.execute(
                    select(WeeklySnapshot)
                    .where((WeeklySnapshot.expires_at <= now) | (WeeklySnapshot.week_end <= hard))
                    .order_by(WeeklySnapshot.week_end)
                )
            ).scalars().all()
            soon_rows = (
                await session.execute(
                    select(WeeklySnapshot)
                    .where(WeeklySnapshot.week_end <= notice, WeeklySnapshot.week_end > hard)
                    .order_by(WeeklySnapshot.week_end)
                )
            ).scalars().all()

        expired_ids = {s.snapshot_id for s in expired_rows}
        result = SnapshotScanResult(
            scanned_at=now,
            expired=[self._expiry_entry(s, now) for s in expired_rows],
            expiring_soon=[
                self._expiry_entry(s, now) for s in soon_rows if s.snapshot_id not in expired_ids
            ],
        )
        log.info(
            "snapshot_scan_completed",
            expiring_soon=len(result.expiring_soon),
            expired=len(result.expired),
        )
        return result

    async def delete_expired_snapshots(self, dry_run: bool = False) -> SnapshotDeletionResult:
        """Delete each expired snapshot with its children and one audit row.

        Each snapshot is its own transaction; a failure is recorded and the
        pass moves on to the next snapshot.
        """
        scan = await self.scan_snapshots()
        candidates = [entry.snapshot_id for entry in scan.expired]
        if dry_run:
            log.info("snapshot_deletion_dry_run", would_delete=len(candidates))
            return SnapshotDeletionResult(dry_run=True, would_delete=candidates)

        result = SnapshotDeletionResult(dry_run=False)
        details = (
            f"Automatic deletion after {self.retention_months} months "
            f"+ {self.grace_days} day grace period"
        )
        for snapshot_id in candidates:
            try:
                async with self._session_factory() as session:
                    await session.execute(
                        delete(TicketSnapshot).where(TicketSnapshot.snapshot_id == snapshot_id)
                    )
                    await session.execute(
                        delete(GroupResolution).where(GroupResolution.snapshot_id == snapshot_id)
                    )
                    deleted = await session.execute(
                        delete(WeeklySnapshot).where(WeeklySnapshot.snapshot_id == snapshot_id)
                    )
                    if deleted.rowcount == 0:
                        await session.rollback()
                        continue
                    session.add(
                        RetentionAuditLog(
                            target_type=RetentionTarget.snapshot.value,
                            target_id=snapshot_id,
                            action=RetentionAction.delete.value,
                            details=details,
                            record_count=1,
                            executed_at=self._clock(),
                        )
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                log.error("snapshot_delete_failed", snapshot_id=snapshot_id, error=str(exc))
                result.errors.append(snapshot_id)
                continue

            result.deleted.append(snapshot_id)
            log.info("snapshot_deleted", snapshot_id=snapshot_id)

        log.info(
            "snapshot_deletion_completed",
            deleted=len(result.deleted),
            failed=len(result.errors),
        )
        return result

    # -- pass 2: ticket compression ----------------------------------------

    def _compression_window(self, now: datetime) -> tuple[datetime, datetime]:
        # whole calendar months only
        return (
            month_start(add_months(now, -self.compressed_retention_months)),
            month_start(add_months(now, -self.full_resolution_months)),
        )

    async def _partner_names(self, session: AsyncSession, partner_ids: set[int]) -> dict[int, str]:
        if not partner_ids:
            return {}
        rows = await session.execute(
            select(CompanyCache.external_id, CompanyCache.name).where(
                CompanyCache.external_id.in_(partner_ids)
            )
        )
        return {row.external_id: row.name for row in rows}

    async def _upsert_aggregate(self, session: AsyncSession, bucket: _Bucket, values: dict) -> None:
        # Select-then-write so the NULL-partner bucket is matched too;
        # a unique index does not treat NULLs as equal.
        partner_clause = (
            MonthlyTicketAggregate.partner_id.is_(None)
            if bucket.partner_id is None
            else MonthlyTicketAggregate.partner_id == bucket.partner_id
        )
        existing = await session.scalar(
            select(MonthlyTicketAggregate).where(
                MonthlyTicketAggregate.year == bucket.year,
                MonthlyTicketAggregate.month == bucket.month,
                partner_clause,
            )
        )
        if existing is None:
            session.add(
                MonthlyTicketAggregate(
                    year=bucket.year,
                    month=bucket.month,
                    partner_id=bucket.partner_id,
                    created_at=self._clock(),
                    **values,
                )
            )
        else:
            # a late-arriving ticket for a month that was already compressed
            merge_aggregate(existing, values)

    async def compress_tickets(self, dry_run: bool = False) -> CompressionResult:
        now = self._clock()
        window_start, window_end = self._compression_window(now)
        log.info(
            "compression_started",
            window_start=window_start.isoformat(),
            window_end=window_end.isoformat(),
            dry_run=dry_run,
        )

        async with self._session_factory() as session:
            tickets = (
                await session.execute(
                    select(Ticket).where(
                        Ticket.created_at >= window_start,
                        Ticket.created_at < window_end,
                    )
                )
            ).scalars().all()

            buckets: dict[AggregateKey, _Bucket] = {}
            for ticket in tickets:
                created = as_utc(ticket.created_at)
                key = (created.year, created.month, ticket.company_id)
                if key not in buckets:
                    buckets[key] = _Bucket(*key)
                buckets[key].add(ticket)

            partner_names = await self._partner_names(
                session, {k[2] for k in buckets if k[2] is not None}
            )

        result = CompressionResult(
            dry_run=dry_run,
            window_start=window_start,
            window_end=window_end,
            eligible_tickets=len(tickets),
            groups=[
                AggregateGroupPreview(
                    year=b.year,
                    month=b.month,
                    partner_id=b.partner_id,
                    partner_name=partner_names.get(b.partner_id) if b.partner_id else None,
                    ticket_count=b.total,
                )
                for b in sorted(
                    buckets.values(),
                    key=lambda b: (b.year, b.month, b.partner_id is None, b.partner_id or 0),
                )
            ],
        )
        if not buckets or dry_run:
            log.info(
                "compression_preview" if dry_run else "compression_nothing_to_do",
                groups=len(buckets),
                eligible_tickets=len(tickets),
            )
            return result

        # Aggregates are committed before any source row is removed
        try:
            async with self._session_factory() as session:
                for bucket in buckets.values():
                    partner_name = partner_names.get(bucket.partner_id) if bucket.partner_id else None
                    await self._upsert_aggregate(session, bucket, bucket.values(partner_name))
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                "Aggregate upsert failed; no tickets were deleted",
                {"groups": len(buckets)},
            ) from exc

        result.aggregates_written = len(buckets)
        result.compressed_from_total = sum(b.total for b in buckets.values())

        for bucket in buckets.values():
            result.tickets_deleted += await self._delete_compressed(bucket)

        if result.tickets_deleted != result.compressed_from_total:
            log.warning(
                "compression_count_mismatch",
                compressed=result.compressed_from_total,
                deleted=result.tickets_deleted,
            )
        log.info(
            "compression_completed",
            aggregates=result.aggregates_written,
            tickets_deleted=result.tickets_deleted,
        )
        return result

    async def _delete_compressed(self, bucket: _Bucket) -> int:
        target_id = aggregate_target_id(bucket.key)
        deleted_total = 0
        for start in range(0, len(bucket.ticket_ids), self.delete_batch_size):
            ids = bucket.ticket_ids[start:start + self.delete_batch_size]
            try:
                async with self._session_factory() as session:
                    deleted = await session.execute(delete(Ticket).where(Ticket.id.in_(ids)))
                    count = deleted.rowcount
                    session.add(
                        RetentionAuditLog(
                            target_type=RetentionTarget.ticket_batch.value,
                            target_id=target_id,
                            action=RetentionAction.compress.value,
                            details=(
                                f"Compressed {count} tickets into monthly aggregate {target_id} "
                                f"after {self.full_resolution_months} months at full resolution"
                            ),
                            record_count=count,
                            executed_at=self._clock(),
                        )
                    )
                    await session.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(
                    "Compressed ticket delete failed",
                    {"aggregate": target_id, "deleted_so_far": deleted_total},
                ) from exc
            deleted_total += count
            await self._pause()
        return deleted_total

    # -- pass 3: aggregate purge -------------------------------------------

    async def purge_aggregates(self, dry_run: bool = False) -> PurgeResult:
        cutoff = add_months(self._clock(), -self.compressed_retention_months)
        cutoff_index = month_index(cutoff.year, cutoff.month)
        condition = (MonthlyTicketAggregate.year * 12 + MonthlyTicketAggregate.month) < cutoff_index

        result = PurgeResult(dry_run=dry_run, cutoff_year=cutoff.year, cutoff_month=cutoff.month)
        try:
            async with self._session_factory() as session:
                result.aggregates_found = await session.scalar(
                    select(func.count()).select_from(MonthlyTicketAggregate).where(condition)
                ) or 0
                if dry_run or result.aggregates_found == 0:
                    log.info(
                        "aggregate_purge_preview" if dry_run else "aggregate_purge_nothing_to_do",
                        found=result.aggregates_found,
                    )
                    return result

                deleted = await session.execute(delete(MonthlyTicketAggregate).where(condition))
                result.aggregates_deleted = deleted.rowcount
                session.add(
                    RetentionAuditLog(
                        target_type=RetentionTarget.aggregate_batch.value,
                        target_id=f"before:{cutoff.year:04d}-{cutoff.month:02d}",
                        action=RetentionAction.purge.value,
                        details=(
                            f"Purged {result.aggregates_deleted} monthly aggregates older than "
                            f"{self.compressed_retention_months} months"
                        ),
                        record_count=result.aggregates_deleted,
                        executed_at=self._clock(),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Aggregate purge failed", {"cutoff": cutoff_index}) from exc

        log.info("aggregate_purge_completed", deleted=result.aggregates_deleted)
        return result

    # -- reporting ---------------------------------------------------------

    async def retention_stats(self) -> RetentionStats:
        async with self._session_factory() as session:
            full = (
                await session.execute(
                    select(func.count(), func.min(Ticket.created_at), func.max(Ticket.created_at))
                    .select_from(Ticket)
                )
            ).one()
            months = await session.scalar(
                select(func.count(func.distinct(
                    MonthlyTicketAggregate.year * 12 + MonthlyTicketAggregate.month
                )))
            )
            compressed = await session.scalar(select(func.sum(MonthlyTicketAggregate.total_tickets)))
            snapshots = await session.scalar(select(func.count()).select_from(WeeklySnapshot))

        count, oldest, newest = full
        return RetentionStats(
            full_resolution_tickets=count or 0,
            oldest_ticket_at=as_utc(oldest),
            newest_ticket_at=as_utc(newest),
            compressed_months=months or 0,
            compressed_tickets=int(compressed or 0),
            snapshot_count=snapshots or 0,
        )

    async def audit_entries(
        self, target_id: Optional[str] = None, limit: int = 100
    ) -> list[RetentionAuditEntry]:
        stmt = select(RetentionAuditLog).order_by(RetentionAuditLog.executed_at.desc()).limit(limit)
        if target_id is not None:
            stmt = stmt.where(RetentionAuditLog.target_id == target_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [RetentionAuditEntry.model_validate(row) for row in rows]
