"""Full-resolution ticket rows.

Upserted by helpdesk id during sync. Rows older than the full-resolution
window are collapsed into MonthlyTicketAggregate and removed from here.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Helpdesk codes: status 2 open, 3 pending, 4 resolved, 5 closed;
    # priority 1 low .. 4 urgent
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)

    group_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    company_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    requester_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    responder_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    ticket_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
