"""
audit/logger.py -- Best-effort recorder of security-relevant events.

Services call append() after their store mutation has committed. The audit
write is not part of that transaction: if the sink fails, the failure is
logged and swallowed so a completed security action (a password reset, an
account deletion) is never reported as failed because its log line was lost.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from audit.models import UNKNOWN_ACTOR, AuditAction, AuditLogEntry
from audit.store import AuditStore

logger = logging.getLogger("restaurant.audit")


class AuditLogger:
    def __init__(self, sink: AuditStore) -> None:
        self.sink = sink

    def append(self, action: AuditAction | str, message: str, actor_id: str | None = None) -> AuditLogEntry | None:
        """Record one entry. Returns the stored entry, or None if the sink failed."""
        label = action.value if isinstance(action, AuditAction) else action
        entry = AuditLogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            actor_id=actor_id or UNKNOWN_ACTOR,
            action=label,
            message=message,
        )
        try:
            entry_id = self.sink.append(entry)
        except (SQLAlchemyError, OSError):
            logger.exception("Audit write failed (action=%s actor=%s)", label, entry.actor_id)
            return None
        return AuditLogEntry(
            id=entry_id,
            timestamp=entry.timestamp,
            actor_id=entry.actor_id,
            action=entry.action,
            message=entry.message,
        )

    def recent(self, limit: int = 100, actor_id: str | None = None, action: str | None = None) -> list[AuditLogEntry]:
        return self.sink.list_entries(limit=limit, actor_id=actor_id, action=action)
