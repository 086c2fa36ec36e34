"""Append-only activity trail.

Entries are added to the caller's session so they commit (or roll back)
together with the change they describe.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ticketpulse.models.activity_log import ActivityLog

CONFIG_ACCESS = "CONFIG_ACCESS"
CONFIG_UPDATE = "CONFIG_UPDATE"
CONFIG_UPDATE_FAILED = "CONFIG_UPDATE_FAILED"
CONFIG_DELETE = "CONFIG_DELETE"


def log_activity(
    session: AsyncSession,
    activity_type: str,
    description: str,
    metadata: Optional[dict[str, Any]] = None,
) -> ActivityLog:
    entry = ActivityLog(
        activity_type=activity_type,
        description=description,
        metadata_json=metadata,
    )
    session.add(entry)
    return entry
