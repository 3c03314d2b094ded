"""
audit/models.py -- Domain dataclasses for the audit log.

Pure data containers. audit/store.py does the work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class Actor:
    """Who performed an audited action, for callers that have no User object.

    AuditLog.append() accepts anything with `id` and `name` attributes, so an
    auth.models.User can be passed directly.
    """

    id: Optional[int]
    name: str = "Unknown"
    email: str = ""


@dataclass
class AuditLogEntry:
    """One append-only record. Never updated; deleted only by retention cleanup.

    organization_id None means a system-wide event (e.g. failed login).
    actor_id None / actor_name "System" means no authenticated actor.
    """

    id: int
    action_type: str
    entity_type: str
    created_at: str
    organization_id: Optional[int] = None
    actor_id: Optional[int] = None
    actor_name: Optional[str] = None
    entity_id: Optional[str] = None
    entity_data: Optional[dict[str, Any]] = None
    organization_name: Optional[str] = None


@dataclass
class AuditFilters:
    """Conjunctive query filters. All fields optional.

    start_date / end_date accept ISO dates or datetimes. A bare date as
    end_date covers the whole day.
    org_id only applies to the cross-tenant query.
    """

    action_type: Optional[str] = None
    entity_type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    org_id: Optional[int] = None


@dataclass
class AuditPage:
    entries: list[AuditLogEntry] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None
