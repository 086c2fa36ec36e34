"""Weekly metric computation.

Pure functions over the tickets fetched for a run plus the reference data.
No database access; the result is handed to the snapshot writer.
"""

from collections import Counter
from datetime import datetime
from typing import Optional, Sequence

import structlog

from ticketpulse.schemas.helpdesk import HelpdeskCompany, HelpdeskGroup, HelpdeskTicket
from ticketpulse.schemas.metrics import (
    CustomerMaxTickets,
    GroupResolutionStats,
    PriorityBreakdown,
    UnresolvedSnapshot,
    WeeklyMetrics,
)
from ticketpulse.services.periods import as_utc

log = structlog.get_logger()

# Helpdesk status codes
STATUS_OPEN = 2
STATUS_PENDING = 3
STATUS_RESOLVED = 4
STATUS_CLOSED = 5

# Helpdesk priority codes
PRIORITY_LOW = 1
PRIORITY_MEDIUM = 2
PRIORITY_HIGH = 3
PRIORITY_URGENT = 4

SUPPORT_ENGINEERS_GROUP = "Support Engineers"
PRODUCT_SUPPORT_GROUP = "Product Support"
MARKED_FOR_RELEASE_TYPE = "Marked for release"


def resolution_hours(created_at: datetime, updated_at: datetime) -> float:
    return (as_utc(updated_at) - as_utc(created_at)).total_seconds() / 3600.0


def priority_breakdown(tickets: Sequence[HelpdeskTicket]) -> PriorityBreakdown:
    counts = Counter(t.priority for t in tickets)
    return PriorityBreakdown(
        urgent=counts[PRIORITY_URGENT],
        high=counts[PRIORITY_HIGH],
        medium=counts[PRIORITY_MEDIUM],
        low=counts[PRIORITY_LOW],
    )


def resolution_by_group(
    tickets: Sequence[HelpdeskTicket], group_names: dict[int, str]
) -> list[GroupResolutionStats]:
    stats: dict[int, GroupResolutionStats] = {}
    for ticket in tickets:
        if ticket.group_id is None:
            continue
        entry = stats.get(ticket.group_id)
        if entry is None:
            entry = GroupResolutionStats(
                group_id=ticket.group_id,
                group_name=group_names.get(ticket.group_id, f"Group {ticket.group_id}"),
            )
            stats[ticket.group_id] = entry

        if ticket.status in (STATUS_RESOLVED, STATUS_CLOSED):
            entry.tickets_resolved += 1
        elif ticket.status == STATUS_OPEN:
            entry.tickets_open += 1
        elif ticket.status == STATUS_PENDING:
            entry.tickets_pending += 1
    return list(stats.values())


def customer_with_max_tickets(
    tickets: Sequence[HelpdeskTicket], company_names: dict[int, str]
) -> Optional[CustomerMaxTickets]:
    counts = Counter(t.company_id for t in tickets if t.company_id is not None)
    if not counts:
        return None
    # most_common keeps first-seen order on ties
    company_id, count = counts.most_common(1)[0]
    return CustomerMaxTickets(
        company_id=company_id,
        company_name=company_names.get(company_id, f"Company {company_id}"),
        ticket_count=count,
    )


def unresolved_snapshot(
    tickets: Sequence[HelpdeskTicket], groups: Sequence[HelpdeskGroup]
) -> UnresolvedSnapshot:
    se_id = next((g.id for g in groups if g.name == SUPPORT_ENGINEERS_GROUP), None)
    ps_id = next((g.id for g in groups if g.name == PRODUCT_SUPPORT_GROUP), None)

    snapshot = UnresolvedSnapshot()
    for ticket in tickets:
        if ticket.group_id is None:
            continue
        if ticket.group_id == se_id:
            if ticket.status == STATUS_OPEN:
                snapshot.se_open += 1
            elif ticket.status == STATUS_PENDING:
                snapshot.se_pending += 1
        if ticket.group_id == ps_id:
            if ticket.status == STATUS_OPEN:
                snapshot.ps_open += 1
            elif ticket.status == STATUS_PENDING:
                snapshot.ps_pending += 1
            if ticket.type == MARKED_FOR_RELEASE_TYPE:
                snapshot.ps_marked_for_release += 1
    return snapshot


def average_resolution_hours(tickets: Sequence[HelpdeskTicket]) -> Optional[float]:
    resolved = [t for t in tickets if t.status in (STATUS_RESOLVED, STATUS_CLOSED)]
    if not resolved:
        return None
    total = sum(resolution_hours(t.created_at, t.updated_at) for t in resolved)
    return total / len(resolved)


def compute_weekly_metrics(
    snapshot_id: str,
    week_start: datetime,
    week_end: datetime,
    tickets: Sequence[HelpdeskTicket],
    groups: Sequence[HelpdeskGroup],
    companies: Sequence[HelpdeskCompany],
) -> WeeklyMetrics:
    """Aggregate one reporting week.

    "Created" counts tickets whose created_at falls inside the week
    (both boundaries inclusive). Status and priority counts cover every
    ticket handed in, which for a weekly run is the set updated since the
    previous sync.
    """
    log.info("computing_weekly_metrics", snapshot_id=snapshot_id, ticket_count=len(tickets))

    group_names = {g.id: g.name for g in groups}
    company_names = {c.id: c.name for c in companies}
    start, end = as_utc(week_start), as_utc(week_end)

    metrics = WeeklyMetrics(
        snapshot_id=snapshot_id,
        week_start=start,
        week_end=end,
        tickets_created=sum(1 for t in tickets if start <= as_utc(t.created_at) <= end),
        tickets_resolved=sum(1 for t in tickets if t.status == STATUS_RESOLVED),
        tickets_closed=sum(1 for t in tickets if t.status == STATUS_CLOSED),
        priority=priority_breakdown(tickets),
        group_resolutions=resolution_by_group(tickets, group_names),
        customer_max_tickets=customer_with_max_tickets(tickets, company_names),
        unresolved=unresolved_snapshot(tickets, groups),
        average_resolution_hours=average_resolution_hours(tickets),
    )

    log.info(
        "weekly_metrics_computed",
        snapshot_id=snapshot_id,
        tickets_created=metrics.tickets_created,
        tickets_resolved=metrics.tickets_resolved,
    )
    return metrics
