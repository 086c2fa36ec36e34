"""Weekly snapshot models.

A WeeklySnapshot is keyed by its deterministic snapshot_id
(``snapshot_YYYYMMDD`` of the week-end date) and owns two kinds of child
rows: per-group resolution breakdowns and the raw ticket rows captured when
the snapshot was written.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class WeeklySnapshot(Base):
    __tablename__ = "weekly_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    snapshot_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    week_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    week_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="Asia/Kolkata")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    tickets_created: Mapped[int] = mapped_column(Integer, nullable=False)
    tickets_resolved: Mapped[int] = mapped_column(Integer, nullable=False)
    tickets_closed: Mapped[int] = mapped_column(Integer, nullable=False)
    priority_urgent: Mapped[int] = mapped_column(Integer, nullable=False)
    priority_high: Mapped[int] = mapped_column(Integer, nullable=False)
    priority_medium: Mapped[int] = mapped_column(Integer, nullable=False)
    priority_low: Mapped[int] = mapped_column(Integer, nullable=False)
    average_resolution_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    customer_max_tickets_company_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    customer_max_tickets_company_name: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    customer_max_tickets_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    se_unresolved_open: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    se_unresolved_pending: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ps_unresolved_open: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ps_unresolved_pending: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ps_unresolved_marked_for_release: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    # Denormalized at write time so retention scans never recompute it
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )


class GroupResolution(Base):
    __tablename__ = "group_resolutions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    snapshot_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("weekly_snapshots.snapshot_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    group_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    group_name: Mapped[str] = mapped_column(String(255), nullable=False)
    tickets_resolved: Mapped[int] = mapped_column(Integer, nullable=False)
    tickets_open: Mapped[int] = mapped_column(Integer, nullable=False)
    tickets_pending: Mapped[int] = mapped_column(Integer, nullable=False)


class TicketSnapshot(Base):
    __tablename__ = "ticket_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    snapshot_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("weekly_snapshots.snapshot_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    group_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    company_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
