"""Test doubles and row builders shared across test modules."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import func, select

from ticketpulse.errors import CollaboratorFetchError
from ticketpulse.schemas.helpdesk import HelpdeskCompany, HelpdeskGroup, HelpdeskTicket

TEST_PASSPHRASE = "test-passphrase-for-unit-tests"


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeHelpdesk:
    """In-memory stand-in for the helpdesk collaborator."""

    def __init__(
        self,
        tickets=(),
        groups=(),
        companies=(),
        on_fetch: Optional[Callable[[], None]] = None,
    ):
        self.tickets = list(tickets)
        self.groups = list(groups)
        self.companies = list(companies)
        self.on_fetch = on_fetch
        self.fail_reference = False
        self.calls: list[tuple] = []

    def _fetched(self):
        if self.on_fetch is not None:
            self.on_fetch()

    async def get_all_entities(self) -> list[HelpdeskTicket]:
        self.calls.append(("all",))
        self._fetched()
        return list(self.tickets)

    async def get_entities_updated_since(self, since: datetime) -> list[HelpdeskTicket]:
        self.calls.append(("since", since))
        self._fetched()
        return [t for t in self.tickets if t.updated_at >= since]

    async def get_reference_groups(self) -> list[HelpdeskGroup]:
        self.calls.append(("groups",))
        if self.fail_reference:
            raise CollaboratorFetchError("groups unavailable")
        return list(self.groups)

    async def get_reference_companies(self) -> list[HelpdeskCompany]:
        self.calls.append(("companies",))
        if self.fail_reference:
            raise CollaboratorFetchError("companies unavailable")
        return list(self.companies)


def make_ticket(ticket_id: int, **overrides) -> HelpdeskTicket:
    created = overrides.pop("created_at", datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc))
    data = {
        "id": ticket_id,
        "subject": f"Ticket {ticket_id}",
        "status": 2,
        "priority": 1,
        "created_at": created,
        "updated_at": created + timedelta(hours=4),
    }
    data.update(overrides)
    return HelpdeskTicket(**data)


async def count_rows(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))
