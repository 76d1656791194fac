"""
audit/store.py -- SQLAlchemy Core sink for audit log entries.

Pattern: Repository + Data Mapper (same shape as auth/store.py).
The store is append-only: it exposes append() and read queries, and no
update or delete method exists. Retention is an operator concern handled
outside the application.

Layer rule: no imports from api/, auth/ or mail/.
"""

from __future__ import annotations

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

from audit.models import AuditLogEntry
from core.config import get_settings

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(32), nullable=False, index=True),
    Column("actor_id", String(64), nullable=False, index=True),
    Column("action", String(64), nullable=False, index=True),
    Column("message", Text, nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class AuditStore:
    """Append-only repository for AuditLogEntry records.

    Usage:
        store = AuditStore("sqlite:///:memory:")
        store.append(AuditLogEntry(timestamp=..., actor_id="abc", action="Logout", message="..."))
        store.list_entries(limit=20)
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().audit_db_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def append(self, entry: AuditLogEntry) -> int:
        """Insert one entry and return its ID."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    timestamp=entry.timestamp,
                    actor_id=entry.actor_id,
                    action=entry.action,
                    message=entry.message,
                )
            )
            return result.inserted_primary_key[0]

    def list_entries(
        self, limit: int = 100, actor_id: str | None = None, action: str | None = None
    ) -> list[AuditLogEntry]:
        """Return the newest entries first, optionally filtered by actor or action."""
        query = _audit_log.select()
        if actor_id is not None:
            query = query.where(_audit_log.c.actor_id == actor_id)
        if action is not None:
            query = query.where(_audit_log.c.action == action)
        query = query.order_by(_audit_log.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(_audit_log.select().limit(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        timestamp=row.timestamp,
        actor_id=row.actor_id,
        action=row.action,
        message=row.message,
    )
