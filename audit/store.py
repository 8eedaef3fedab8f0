"""
audit/store.py -- Append-only persistence for the audit trail.

The store exposes insert and read only. There is no update or delete method:
audit rows are immutable once written.

details is stored as JSON text exactly as given; redaction happens on the
read path (audit/redact.py), never here.

Layer rule: no imports from api/, auth/, or tenancy/. core/ is allowed.
"""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, or_, select
from sqlalchemy.engine import Engine

from audit.models import AuditEntry, AuditQuery
from core.timestamps import from_iso, now_iso, to_iso

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),  # logical reference, no FK
    Column("action", String(64), nullable=False),
    Column("entity", String(50), index=True),
    Column("entity_id", String(64)),  # logical reference, no FK
    Column("details", Text, nullable=False, server_default="{}"),
    Column("ip_address", String(64)),
    Column("created_at", String(32), nullable=False, index=True),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AuditStore:
    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def record(self, entry: AuditEntry, created_at: datetime | None = None) -> int:
        """Append one row and return its id. created_at defaults to now (UTC)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    user_id=entry.user_id,
                    action=entry.action,
                    entity=entry.entity,
                    entity_id=entry.entity_id,
                    details=json.dumps(entry.details, default=str),
                    ip_address=entry.ip_address,
                    created_at=to_iso(created_at) if created_at is not None else now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_entries(self, query: AuditQuery, page: int = 1, limit: int = 50) -> tuple[list[AuditEntry], int]:
        """Return (page of entries newest first, total matching)."""
        conditions = []
        if query.entity:
            conditions.append(_audit_logs.c.entity == query.entity)
        if query.user_id is not None:
            conditions.append(_audit_logs.c.user_id == query.user_id)
        lower = query.lower_bound()
        if lower is not None:
            conditions.append(_audit_logs.c.created_at >= to_iso(lower))
        upper = query.upper_bound()
        if upper is not None:
            conditions.append(_audit_logs.c.created_at < to_iso(upper))
        if query.search:
            pattern = f"%{_escape_like(query.search.strip())}%"
            conditions.append(
                or_(
                    _audit_logs.c.action.ilike(pattern, escape="\\"),
                    _audit_logs.c.entity_id.ilike(pattern, escape="\\"),
                    _audit_logs.c.ip_address.ilike(pattern, escape="\\"),
                )
            )

        stmt = (
            _audit_logs.select()
            .where(*conditions)
            .order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
            total = conn.execute(select(func.count()).select_from(_audit_logs).where(*conditions)).scalar() or 0
        return [_row_to_entry(r) for r in rows], total

    def count(self, action: str | None = None) -> int:
        stmt = select(func.count()).select_from(_audit_logs)
        if action is not None:
            stmt = stmt.where(_audit_logs.c.action == action)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        entity=row.entity,
        entity_id=row.entity_id,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        created_at=from_iso(row.created_at),
    )
