"""Operational audit log writer.

Audit writes must never take the pipeline down with them: when the
database insert fails, the entry is logged and appended as a JSON line to a
local fallback file instead.
"""

import json
from pathlib import Path
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticketpulse.config import settings
from ticketpulse.models.audit_log import AuditLog
from ticketpulse.services.periods import utcnow

log = structlog.get_logger()


class AuditLogWriter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fallback_path: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._fallback_path = Path(fallback_path or settings.audit_fallback_path)

    async def write(
        self,
        action: str,
        details: Optional[dict[str, Any]] = None,
        actor: str = "system",
    ) -> bool:
        """Persist one audit entry. Returns False when the fallback sink was used."""
        try:
            async with self._session_factory() as session:
                session.add(AuditLog(action=action, actor=actor, details=details))
                await session.commit()
            return True
        except Exception as exc:
            log.error("audit_log_write_failed", action=action, error=str(exc))
            self._write_fallback(action, actor, details, str(exc))
            return False

    def _write_fallback(
        self,
        action: str,
        actor: str,
        details: Optional[dict[str, Any]],
        error: str,
    ) -> None:
        record = {
            "timestamp": utcnow().isoformat(),
            "action": action,
            "actor": actor,
            "details": details,
            "error": error,
        }
        try:
            with self._fallback_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(record, default=str) + "\n")
        except OSError as exc:
            log.error(
                "audit_fallback_write_failed",
                path=str(self._fallback_path),
                error=str(exc),
            )
