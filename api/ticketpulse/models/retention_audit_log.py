"""Retention audit log.

Append-only. Every destructive retention action writes exactly one row here
in the same transaction as the delete it describes.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RetentionTarget(str, enum.Enum):
    snapshot = "weekly_snapshot"
    ticket_batch = "ticket_batch"
    aggregate_batch = "aggregate_batch"


class RetentionAction(str, enum.Enum):
    delete = "DELETE"
    compress = "COMPRESS"
    purge = "PURGE"


class RetentionAuditLog(Base):
    __tablename__ = "retention_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    target_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
