"""
core/database.py -- Engine factory and timestamp helpers shared by every store.

Every store (auth/store.py, auth/sessions.py, audit/store.py) declares its own
SQLAlchemy Core tables on its own MetaData but runs against one shared Engine,
so cross-table joins (refresh_tokens -> users, audit_logs -> organizations)
work and a single WAL-mode SQLite file holds the whole security state.

Timestamps are stored as fixed-width UTC ISO 8601 strings (microsecond
precision, +00:00 suffix). Fixed width keeps lexicographic order equal to
chronological order, which the expiry predicates and the audit keyset cursor
both depend on.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Build the shared Engine.

    For SQLite, `timeout` is the busy timeout: how long a connection waits on a
    locked database before raising. It bounds store access per request.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO 8601 string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(utcnow())


def iso_offset(**delta) -> str:
    """Return now + timedelta(**delta) as an ISO string. Negative values look back."""
    return to_iso(utcnow() + timedelta(**delta))
