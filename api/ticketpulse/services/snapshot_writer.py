"""Snapshot writer.

Persists one reporting week's metrics, its per-group breakdown and the raw
ticket rows captured at snapshot time as a single transaction. Writing the
same week twice is a no-op unless ``force`` is set, in which case the old
children and parent are deleted and the new version inserted inside the same
transaction.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpulse.config import settings
from ticketpulse.errors import PersistenceError
from ticketpulse.models.snapshot import GroupResolution, TicketSnapshot, WeeklySnapshot
from ticketpulse.schemas.helpdesk import HelpdeskTicket
from ticketpulse.schemas.metrics import WeeklyMetrics
from ticketpulse.services.periods import add_months, as_utc, utcnow

log = structlog.get_logger()


class WriteStatus(str, enum.Enum):
    written = "written"
    already_exists = "already_exists"
    overwritten = "overwritten"


@dataclass
class SnapshotWriteResult:
    snapshot_id: str
    status: WriteStatus
    version: int = 1
    ticket_rows: int = 0
    expires_at: Optional[datetime] = None

    @property
    def already_exists(self) -> bool:
        return self.status == WriteStatus.already_exists


def _snapshot_row(
    metrics: WeeklyMetrics, version: int, created_at: datetime, expires_at: datetime
) -> WeeklySnapshot:
    customer = metrics.customer_max_tickets
    return WeeklySnapshot(
        snapshot_id=metrics.snapshot_id,
        week_start=as_utc(metrics.week_start),
        week_end=as_utc(metrics.week_end),
        created_at=created_at,
        timezone=settings.scheduler_timezone,
        version=version,
        tickets_created=metrics.tickets_created,
        tickets_resolved=metrics.tickets_resolved,
        tickets_closed=metrics.tickets_closed,
        priority_urgent=metrics.priority.urgent,
        priority_high=metrics.priority.high,
        priority_medium=metrics.priority.medium,
        priority_low=metrics.priority.low,
        average_resolution_hours=metrics.average_resolution_hours,
        customer_max_tickets_company_id=customer.company_id if customer else None,
        customer_max_tickets_company_name=customer.company_name if customer else None,
        customer_max_tickets_count=customer.ticket_count if customer else None,
        se_unresolved_open=metrics.unresolved.se_open,
        se_unresolved_pending=metrics.unresolved.se_pending,
        ps_unresolved_open=metrics.unresolved.ps_open,
        ps_unresolved_pending=metrics.unresolved.ps_pending,
        ps_unresolved_marked_for_release=metrics.unresolved.ps_marked_for_release,
        expires_at=expires_at,
    )


def _raw_row(snapshot_id: str, ticket: HelpdeskTicket) -> dict:
    return {
        "snapshot_id": snapshot_id,
        "external_id": ticket.id,
        "subject": ticket.subject,
        "status": ticket.status,
        "priority": ticket.priority,
        "group_id": ticket.group_id,
        "company_id": ticket.company_id,
        "created_at": as_utc(ticket.created_at),
        "updated_at": as_utc(ticket.updated_at),
        "is_escalated": ticket.is_escalated,
        "tags": list(ticket.tags),
    }


class SnapshotWriter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
        raw_batch_size: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.raw_batch_size = raw_batch_size or settings.snapshot_raw_batch_size
        self.retention_months = settings.snapshot_retention_months

    async def exists(self, snapshot_id: str) -> bool:
        async with self._session_factory() as session:
            found = await session.scalar(
                select(WeeklySnapshot.id).where(WeeklySnapshot.snapshot_id == snapshot_id)
            )
        return found is not None

    async def write(
        self,
        metrics: WeeklyMetrics,
        raw_rows: Sequence[HelpdeskTicket],
        force: bool = False,
    ) -> SnapshotWriteResult:
        snapshot_id = metrics.snapshot_id
        created_at = self._clock()
        expires_at = add_months(created_at, self.retention_months)

        try:
            async with self._session_factory() as session:
                prior = await session.scalar(
                    select(WeeklySnapshot).where(WeeklySnapshot.snapshot_id == snapshot_id)
                )
                if prior is not None and not force:
                    log.warning("snapshot_already_exists", snapshot_id=snapshot_id)
                    return SnapshotWriteResult(
                        snapshot_id=snapshot_id,
                        status=WriteStatus.already_exists,
                        version=prior.version,
                        expires_at=as_utc(prior.expires_at),
                    )

                version = 1
                if prior is not None:
                    version = prior.version + 1
                    # Children first, then the parent, so no orphans and no key clash
                    await session.execute(
                        delete(TicketSnapshot).where(TicketSnapshot.snapshot_id == snapshot_id)
                    )
                    await session.execute(
                        delete(GroupResolution).where(GroupResolution.snapshot_id == snapshot_id)
                    )
                    await session.delete(prior)
                    await session.flush()

                session.add(_snapshot_row(metrics, version, created_at, expires_at))
                await session.flush()

                session.add_all(
                    GroupResolution(
                        snapshot_id=snapshot_id,
                        group_id=group.group_id,
                        group_name=group.group_name,
                        tickets_resolved=group.tickets_resolved,
                        tickets_open=group.tickets_open,
                        tickets_pending=group.tickets_pending,
                    )
                    for group in metrics.group_resolutions
                )

                for start in range(0, len(raw_rows), self.raw_batch_size):
                    batch = raw_rows[start:start + self.raw_batch_size]
                    await session.execute(
                        TicketSnapshot.__table__.insert(),
                        [
                            {**_raw_row(snapshot_id, ticket), "id": uuid.uuid4()}
                            for ticket in batch
                        ],
                    )

                await session.commit()
        except IntegrityError as exc:
            if force:
                raise PersistenceError(
                    "Snapshot overwrite failed", {"snapshot_id": snapshot_id}
                ) from exc
            # Lost a race with a concurrent writer for the same week
            log.warning("snapshot_already_exists", snapshot_id=snapshot_id, race=True)
            return SnapshotWriteResult(snapshot_id=snapshot_id, status=WriteStatus.already_exists)
        except SQLAlchemyError as exc:
            log.error("snapshot_write_failed", snapshot_id=snapshot_id, error=str(exc))
            raise PersistenceError("Snapshot write failed", {"snapshot_id": snapshot_id}) from exc

        status = WriteStatus.overwritten if prior is not None else WriteStatus.written
        log.info(
            "snapshot_written",
            snapshot_id=snapshot_id,
            status=status.value,
            version=version,
            groups=len(metrics.group_resolutions),
            ticket_rows=len(raw_rows),
        )
        return SnapshotWriteResult(
            snapshot_id=snapshot_id,
            status=status,
            version=version,
            ticket_rows=len(raw_rows),
            expires_at=expires_at,
        )

    async def get(self, snapshot_id: str) -> Optional[WeeklySnapshot]:
        async with self._session_factory() as session:
            return await session.scalar(
                select(WeeklySnapshot).where(WeeklySnapshot.snapshot_id == snapshot_id)
            )

    async def list_recent(self, limit: int = 52) -> list[WeeklySnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WeeklySnapshot).order_by(WeeklySnapshot.week_end.desc()).limit(limit)
            )
            return list(result.scalars().all())
