"""Incremental sync orchestrator.

Decides once per run whether to fetch the full year-to-date corpus or only
tickets updated since the persisted cursor, upserts what was fetched in
independently committed batches, and then advances the cursor to the time
the sync *started*. Anything modified while the fetch was in flight is
therefore picked up again by the next run.

Reference data (groups, companies) is fetched only on full syncs and cached
in the database; incremental runs read the cache.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpulse.config import settings
from ticketpulse.database import upsert_insert
from ticketpulse.errors import CollaboratorFetchError, PersistenceError
from ticketpulse.models.reference import CompanyCache, GroupCache
from ticketpulse.models.ticket import Ticket
from ticketpulse.schemas.helpdesk import HelpdeskCompany, HelpdeskGroup, HelpdeskTicket
from ticketpulse.services.helpdesk_client import HelpdeskCollaborator
from ticketpulse.services.periods import as_utc, utcnow
from ticketpulse.services.secure_config import SecureConfigStore

log = structlog.get_logger()

SYNC_CURSOR_KEY = "ytd_last_sync_timestamp"

_TICKET_UPDATE_COLUMNS = (
    "subject",
    "description",
    "status",
    "priority",
    "group_id",
    "company_id",
    "requester_id",
    "responder_id",
    "ticket_type",
    "is_escalated",
    "tags",
    "created_at",
    "updated_at",
    "synced_at",
)


def latest_per_ticket(tickets: Sequence[HelpdeskTicket]) -> list[HelpdeskTicket]:
    """Collapse repeated ticket ids to the most recently updated copy.

    Paginating by updated time can return a ticket twice when it changes
    mid-fetch, and one ON CONFLICT statement may not touch a row twice.
    """
    latest: dict[int, HelpdeskTicket] = {}
    for ticket in tickets:
        seen = latest.get(ticket.id)
        if seen is None or ticket.updated_at >= seen.updated_at:
            latest[ticket.id] = ticket
    return list(latest.values())


@dataclass(frozen=True)
class FullSync:
    name = "full"


@dataclass(frozen=True)
class IncrementalSync:
    since: datetime
    name = "incremental"


SyncMode = Union[FullSync, IncrementalSync]


@dataclass
class SyncResult:
    mode: SyncMode
    sync_start: datetime
    cursor: datetime
    upserted: int
    tickets: list[HelpdeskTicket] = field(default_factory=list)
    groups: list[HelpdeskGroup] = field(default_factory=list)
    companies: list[HelpdeskCompany] = field(default_factory=list)


def _ticket_row(ticket: HelpdeskTicket, synced_at: datetime) -> dict:
    return {
        "id": uuid.uuid4(),
        "external_id": ticket.id,
        "subject": ticket.subject,
        "description": ticket.description_text,
        "status": ticket.status,
        "priority": ticket.priority,
        "group_id": ticket.group_id,
        "company_id": ticket.company_id,
        "requester_id": ticket.requester_id,
        "responder_id": ticket.responder_id,
        "ticket_type": ticket.type,
        "is_escalated": ticket.is_escalated,
        "tags": list(ticket.tags),
        "created_at": as_utc(ticket.created_at),
        "updated_at": as_utc(ticket.updated_at),
        "synced_at": synced_at,
    }


class IncrementalSyncOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config_store: SecureConfigStore,
        collaborator: HelpdeskCollaborator,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
        batch_pause_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._config_store = config_store
        self._collaborator = collaborator
        self._clock = clock
        self.batch_size = batch_size or settings.ticket_upsert_batch_size
        self.batch_pause_seconds = (
            settings.batch_pause_seconds if batch_pause_seconds is None else batch_pause_seconds
        )

    # -- cursor ------------------------------------------------------------

    async def read_cursor(self) -> Optional[datetime]:
        raw = await self._config_store.get(SYNC_CURSOR_KEY)
        if not raw:
            return None
        try:
            return as_utc(datetime.fromisoformat(raw))
        except ValueError:
            log.warning("sync_cursor_unparseable", value=raw)
            return None

    async def decide_mode(self) -> SyncMode:
        cursor = await self.read_cursor()
        if cursor is None:
            return FullSync()
        return IncrementalSync(since=cursor)

    async def _advance_cursor(self, mode: SyncMode, sync_start: datetime) -> datetime:
        cursor = sync_start
        if isinstance(mode, IncrementalSync) and sync_start < mode.since:
            # Wall clock went backwards; never move the watermark back
            log.warning(
                "sync_cursor_regression",
                previous=mode.since.isoformat(),
                sync_start=sync_start.isoformat(),
            )
            cursor = mode.since
        await self._config_store.set(SYNC_CURSOR_KEY, cursor.isoformat(), should_encrypt=False)
        return cursor

    # -- tickets -----------------------------------------------------------

    async def _fetch(self, mode: SyncMode) -> list[HelpdeskTicket]:
        if isinstance(mode, IncrementalSync):
            log.info("sync_fetch_incremental", since=mode.since.isoformat())
            return await self._collaborator.get_entities_updated_since(mode.since)
        log.info("sync_fetch_full")
        return await self._collaborator.get_all_entities()

    async def upsert_tickets(self, tickets: Sequence[HelpdeskTicket]) -> int:
        """Upsert by external id in fixed-size batches, one transaction each.

        A failing batch raises PersistenceError; earlier batches stay committed.
        """
        tickets = latest_per_ticket(tickets)
        upserted = 0
        synced_at = self._clock()
        for start in range(0, len(tickets), self.batch_size):
            chunk = tickets[start:start + self.batch_size]
            rows = [_ticket_row(t, synced_at) for t in chunk]
            try:
                async with self._session_factory() as session:
                    stmt = upsert_insert(session, Ticket.__table__).values(rows)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["external_id"],
                        set_={col: stmt.excluded[col] for col in _TICKET_UPDATE_COLUMNS},
                    )
                    await session.execute(stmt)
                    await session.commit()
            except SQLAlchemyError as exc:
                raise PersistenceError(
                    "Ticket upsert batch failed",
                    {"batch_start": start, "committed": upserted},
                ) from exc

            upserted += len(chunk)
            log.debug("ticket_batch_upserted", batch_start=start, size=len(chunk))
            if start + self.batch_size < len(tickets) and self.batch_pause_seconds:
                await asyncio.sleep(self.batch_pause_seconds)
        return upserted

    # -- reference data ----------------------------------------------------

    async def cached_reference(self) -> tuple[list[HelpdeskGroup], list[HelpdeskCompany]]:
        async with self._session_factory() as session:
            groups = (await session.execute(select(GroupCache))).scalars().all()
            companies = (await session.execute(select(CompanyCache))).scalars().all()
        return (
            [HelpdeskGroup(id=g.external_id, name=g.name, description=g.description) for g in groups],
            [
                HelpdeskCompany(id=c.external_id, name=c.name, description=c.description)
                for c in companies
            ],
        )

    async def cache_reference(
        self, groups: Sequence[HelpdeskGroup], companies: Sequence[HelpdeskCompany]
    ) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            for model, items in ((GroupCache, groups), (CompanyCache, companies)):
                if not items:
                    continue
                stmt = upsert_insert(session, model.__table__).values(
                    [
                        {
                            "external_id": item.id,
                            "name": item.name,
                            "description": item.description,
                            "updated_at": now,
                        }
                        for item in items
                    ]
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["external_id"],
                    set_={
                        "name": stmt.excluded.name,
                        "description": stmt.excluded.description,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                await session.execute(stmt)
            await session.commit()
        log.info("reference_data_cached", groups=len(groups), companies=len(companies))

    async def _load_reference(
        self, mode: SyncMode
    ) -> tuple[list[HelpdeskGroup], list[HelpdeskCompany]]:
        cached_groups, cached_companies = await self.cached_reference()
        if isinstance(mode, IncrementalSync):
            return cached_groups, cached_companies

        groups, companies = cached_groups, cached_companies
        fetched_groups: list[HelpdeskGroup] = []
        fetched_companies: list[HelpdeskCompany] = []
        try:
            fetched_groups = await self._collaborator.get_reference_groups()
            groups = fetched_groups
        except CollaboratorFetchError as exc:
            log.warning("reference_groups_fetch_failed", error=exc.message)
        try:
            fetched_companies = await self._collaborator.get_reference_companies()
            companies = fetched_companies
        except CollaboratorFetchError as exc:
            log.warning("reference_companies_fetch_failed", error=exc.message)

        try:
            await self.cache_reference(fetched_groups, fetched_companies)
        except SQLAlchemyError as exc:
            log.warning("reference_cache_write_failed", error=str(exc))
        return groups, companies

    # -- run ---------------------------------------------------------------

    async def run(self) -> SyncResult:
        mode = await self.decide_mode()
        sync_start = self._clock()
        log.info("sync_started", mode=mode.name, sync_start=sync_start.isoformat())

        tickets = await self._fetch(mode)
        upserted = await self.upsert_tickets(tickets)
        cursor = await self._advance_cursor(mode, sync_start)

        groups, companies = await self._load_reference(mode)

        log.info(
            "sync_completed",
            mode=mode.name,
            fetched=len(tickets),
            upserted=upserted,
            groups=len(groups),
            companies=len(companies),
            cursor=cursor.isoformat(),
        )
        return SyncResult(
            mode=mode,
            sync_start=sync_start,
            cursor=cursor,
            upserted=upserted,
            tickets=list(tickets),
            groups=groups,
            companies=companies,
        )
