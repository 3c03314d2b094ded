"""
audit/store.py -- SQLAlchemy Core persistence for the append-only audit log.

Pattern: Repository + Data Mapper. AuditLog is the repository; _row_to_entry
is the mapper.

Write path -- fail-open:
  append() never raises. Any failure (DB locked, disk full, unserializable
  entity_data) is logged locally and None is returned. Audit completeness is
  best-effort: a broken audit sink must not block login, permission checks
  or any primary operation. That specific record is lost; nothing is queued
  or retried.

Read path -- keyset pagination:
  Ordering is (created_at DESC, id DESC). Timestamps alone are not unique, so
  id breaks ties. The cursor encodes (created_at, id) of the last returned
  row; the next page's predicate is
      created_at < c.created_at OR (created_at = c.created_at AND id < c.id)
  We fetch limit + 1 rows and trim the extra one to compute has_more without
  a COUNT query.

Retention:
  cleanup() deletes rows older than retention_days. It is NOT called from the
  query path; api/main.py runs it on a schedule. Because it only removes rows
  older than any reasonable page window, it is safe alongside append/query.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, and_, column, or_, select, table
from sqlalchemy.engine import Engine

from audit.models import AuditFilters, AuditLogEntry, AuditPage
from auth.errors import InvalidInputError
from core.database import iso_offset, now_iso, to_iso

logger = logging.getLogger("orgtree.audit")

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer),  # NULL = system-wide event
    Column("actor_id", Integer),  # NULL = no authenticated actor
    Column("actor_name", String(255)),
    Column("action_type", String(64), nullable=False),
    Column("entity_type", String(64), nullable=False),
    Column("entity_id", String(255)),
    Column("entity_data", Text),  # JSON snapshot
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_logs_created_id", "created_at", "id"),
    Index("ix_audit_logs_org_created", "organization_id", "created_at"),
)

# Lightweight reference to the directory's organizations table (owned by
# auth/store.py) for the organization name on cross-tenant queries.
_organizations = table("organizations", column("id"), column("name"))


class InvalidCursorError(InvalidInputError):
    default_message = "Invalid pagination cursor."


# ---------------------------------------------------------------------------
# Cursor helpers
# ---------------------------------------------------------------------------


# SQLite INTEGER PRIMARY KEY range; larger ids cannot be bound as parameters.
_MAX_ROW_ID = 2**63 - 1


def encode_cursor(created_at: str, entry_id: int) -> str:
    """Encode a (created_at, id) keyset cursor. '|' cannot occur in an ISO timestamp."""
    return f"{created_at}|{entry_id}"


def decode_cursor(cursor: str) -> tuple[str, int]:
    """Decode a cursor into (normalized created_at, id). Raises InvalidCursorError."""
    parts = cursor.split("|", 1)
    if len(parts) != 2:
        raise InvalidCursorError(detail={"cursor": cursor})
    try:
        created_at = to_iso(datetime.fromisoformat(parts[0]))
        entry_id = int(parts[1])
    except ValueError as exc:
        raise InvalidCursorError(detail={"cursor": cursor}) from exc
    if not 1 <= entry_id <= _MAX_ROW_ID:
        raise InvalidCursorError(detail={"cursor": cursor})
    return created_at, entry_id


def _parse_bound(value: str, *, end_of_day: bool) -> str:
    try:
        dt = datetime.fromisoformat(value)
    except ValueError as exc:
        raise InvalidInputError("Invalid date filter.", detail={"value": value}) from exc
    if end_of_day and len(value) == 10:
        # Bare YYYY-MM-DD as an upper bound covers the whole day.
        dt = dt + timedelta(days=1) - timedelta(microseconds=1)
    return to_iso(dt)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditLog:
    """Repository for AuditLogEntry records.

    Usage:
        audit = AuditLog(engine)
        audit.append(org_id, user, "member_added", "member", str(member_id), {"role": "editor"})
        page = audit.query(org_id, AuditFilters(action_type="permission_denied"), limit=20)
        more = audit.query(org_id, AuditFilters(action_type="permission_denied"), cursor=page.next_cursor)
    """

    def __init__(self, engine: Engine, retention_days: int = 365) -> None:
        self.engine = engine
        self.retention_days = retention_days
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def append(
        self,
        org_id: Optional[int],
        actor: Any,
        action_type: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, int]]:
        """Append one entry. Returns {"id": ...} or None on any failure. Never raises.

        actor is None (no authenticated actor) or any object exposing `id`
        and `name` -- an auth.models.User or an audit.models.Actor.
        """
        try:
            actor_id = getattr(actor, "id", None) if actor is not None else None
            actor_name = (getattr(actor, "name", None) if actor is not None else None) or "System"
            payload = json.dumps(data, default=str) if data is not None else None
            with self.engine.begin() as conn:
                result = conn.execute(
                    audit_logs.insert().values(
                        organization_id=org_id,
                        actor_id=actor_id,
                        actor_name=actor_name,
                        action_type=action_type,
                        entity_type=entity_type,
                        entity_id=str(entity_id) if entity_id is not None else None,
                        entity_data=payload,
                        created_at=now_iso(),
                    )
                )
                return {"id": result.inserted_primary_key[0]}
        except Exception:
            logger.exception("Failed to write audit log entry (action=%s entity=%s)", action_type, entity_type)
            return None

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def query(
        self,
        org_id: int,
        filters: Optional[AuditFilters] = None,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Return one page of an organization's audit entries, newest first.

        filters.org_id is ignored here -- the organization is always org_id.
        """
        conditions = [audit_logs.c.organization_id == org_id]
        conditions += self._filter_conditions(filters or AuditFilters())
        stmt = select(audit_logs)
        return self._page(stmt, conditions, cursor, limit)

    def query_all(
        self,
        filters: Optional[AuditFilters] = None,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """Cross-tenant variant. Privileged callers only -- enforced by the caller.

        Entries carry organization_name (None for system-wide events or
        deleted organizations).
        """
        filters = filters or AuditFilters()
        conditions = []
        if filters.org_id is not None:
            conditions.append(audit_logs.c.organization_id == filters.org_id)
        conditions += self._filter_conditions(filters)
        stmt = select(audit_logs, _organizations.c.name.label("organization_name")).select_from(
            audit_logs.outerjoin(_organizations, audit_logs.c.organization_id == _organizations.c.id)
        )
        return self._page(stmt, conditions, cursor, limit)

    def filter_options(self) -> dict[str, list[str]]:
        """Distinct action and entity types, for populating filter dropdowns."""
        with self.engine.connect() as conn:
            actions = conn.execute(
                select(audit_logs.c.action_type).distinct().order_by(audit_logs.c.action_type)
            ).scalars()
            action_types = [a for a in actions if a]
            entities = conn.execute(
                select(audit_logs.c.entity_type).distinct().order_by(audit_logs.c.entity_type)
            ).scalars()
            entity_types = [e for e in entities if e]
        return {"action_types": action_types, "entity_types": entity_types}

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Delete entries older than retention_days. Returns rows removed; 0 on failure."""
        cutoff = iso_offset(days=-self.retention_days)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(audit_logs.delete().where(audit_logs.c.created_at < cutoff))
        except Exception:
            logger.exception("Audit log cleanup failed")
            return 0
        if result.rowcount:
            logger.info("Cleaned up %d audit log entries older than %d days", result.rowcount, self.retention_days)
        return result.rowcount

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _filter_conditions(filters: AuditFilters) -> list:
        conditions = []
        if filters.action_type:
            conditions.append(audit_logs.c.action_type == filters.action_type)
        if filters.entity_type:
            conditions.append(audit_logs.c.entity_type == filters.entity_type)
        if filters.start_date:
            conditions.append(audit_logs.c.created_at >= _parse_bound(filters.start_date, end_of_day=False))
        if filters.end_date:
            conditions.append(audit_logs.c.created_at <= _parse_bound(filters.end_date, end_of_day=True))
        return conditions

    def _page(self, stmt, conditions: list, cursor: Optional[str], limit: int) -> AuditPage:
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}.")
        if cursor:
            cursor_at, cursor_id = decode_cursor(cursor)
            conditions = conditions + [
                or_(
                    audit_logs.c.created_at < cursor_at,
                    and_(audit_logs.c.created_at == cursor_at, audit_logs.c.id < cursor_id),
                )
            ]
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(audit_logs.c.created_at.desc(), audit_logs.c.id.desc()).limit(limit + 1)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()

        has_more = len(rows) > limit
        rows = rows[:limit]
        entries = [_row_to_entry(r) for r in rows]
        next_cursor = encode_cursor(rows[-1].created_at, rows[-1].id) if has_more and rows else None
        return AuditPage(entries=entries, has_more=has_more, next_cursor=next_cursor)


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuditLogEntry:
    entity_data = None
    if row.entity_data:
        try:
            entity_data = json.loads(row.entity_data)
        except ValueError:
            entity_data = {"raw": row.entity_data}
    return AuditLogEntry(
        id=row.id,
        organization_id=row.organization_id,
        actor_id=row.actor_id,
        actor_name=row.actor_name,
        action_type=row.action_type,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        entity_data=entity_data,
        created_at=row.created_at,
        organization_name=getattr(row, "organization_name", None),
    )
