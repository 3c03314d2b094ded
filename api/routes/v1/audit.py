"""
api/routes/v1/audit.py -- Audit log query endpoints.

Routes:
  GET /organizations/{org_id}/audit-logs  -- one organization's log (org admin or above)
  GET /admin/audit-logs                   -- every organization plus system-wide events (superuser)
  GET /admin/audit-logs/filters           -- distinct action/entity types (superuser)

Query parameters (all optional):
  action_type, entity_type  exact match
  start_date, end_date      ISO date or datetime; a bare end_date covers the whole day
  org_id                    admin route only
  cursor                    next_cursor from the previous page
  limit                     1..200, default 50

Pagination is keyset-based (see audit/store.py): entries appended while a
client pages through do not shift or duplicate rows already returned.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import AuditFilterOptionsResponse, AuditPageResponse
from audit.models import AuditFilters
from audit.store import DEFAULT_PAGE_SIZE, AuditLog
from auth.dependencies import require_org_role, require_superuser
from auth.models import EffectiveAccess, User

router = APIRouter()


@router.get("/organizations/{org_id}/audit-logs", response_model=AuditPageResponse)
def org_audit_logs(
    request: Request,
    org_id: int,
    action_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    access: EffectiveAccess = Depends(require_org_role("admin")),
) -> AuditPageResponse:
    audit_log: AuditLog = request.app.state.audit_log
    filters = AuditFilters(
        action_type=action_type,
        entity_type=entity_type,
        start_date=start_date,
        end_date=end_date,
    )
    return AuditPageResponse.from_page(audit_log.query(org_id, filters, cursor=cursor, limit=limit))


@router.get("/admin/audit-logs", response_model=AuditPageResponse)
def all_audit_logs(
    request: Request,
    action_type: Optional[str] = None,
    entity_type: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    org_id: Optional[int] = None,
    cursor: Optional[str] = None,
    limit: int = DEFAULT_PAGE_SIZE,
    current_user: User = Depends(require_superuser),
) -> AuditPageResponse:
    """Cross-tenant query. Entries carry organization_name."""
    audit_log: AuditLog = request.app.state.audit_log
    filters = AuditFilters(
        action_type=action_type,
        entity_type=entity_type,
        start_date=start_date,
        end_date=end_date,
        org_id=org_id,
    )
    return AuditPageResponse.from_page(audit_log.query_all(filters, cursor=cursor, limit=limit))


@router.get("/admin/audit-logs/filters", response_model=AuditFilterOptionsResponse)
def audit_filter_options(
    request: Request,
    current_user: User = Depends(require_superuser),
) -> AuditFilterOptionsResponse:
    audit_log: AuditLog = request.app.state.audit_log
    return AuditFilterOptionsResponse(**audit_log.filter_options())
