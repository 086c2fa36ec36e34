"""Monthly ticket aggregates.

Compressed history for tickets between the full-resolution window and the
compressed-retention horizon. One row per (year, month, partner_id); rows
without a partner share the NULL-partner bucket.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class MonthlyTicketAggregate(Base):
    __tablename__ = "monthly_ticket_aggregates"
    __table_args__ = (
        UniqueConstraint("year", "month", "partner_id", name="uq_monthly_aggregate_key"),
        Index("ix_monthly_aggregate_year_month", "year", "month"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    partner_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    partner_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    open_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    avg_resolution_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    median_resolution_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    priority_urgent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority_high: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority_medium: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    priority_low: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    data_loss_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sync_failure_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    how_to_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    training_tickets: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    compressed_from_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
