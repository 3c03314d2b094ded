"""
auth/permissions.py -- Organization access resolution and minimum-role enforcement.

Two role vocabularies exist and are NOT interchangeable:
  global role (users.role):        user | admin | superuser
  organization role (effective):   viewer < editor < admin < owner

Effective role resolution, first match wins:
  1. global superuser        -> owner-equivalent on every organization
  2. organization missing    -> no access
  3. organization creator    -> owner (no membership row needed)
  4. membership row          -> its role
  5. otherwise               -> no access

require_permission() turns "no access" into OrgNotFoundError (404), the same
response as a non-existent organization, so probing IDs cannot enumerate
organizations the caller has no relationship with. Insufficient role is
ForbiddenError (403) and writes exactly one permission_denied audit entry.

Role levels come from the explicit ROLE_LEVELS mapping. An unrecognized
EFFECTIVE role (corrupt or legacy data) is level 0 -- least privilege. An
unrecognized REQUIRED role is a programming error and raises ValueError.

Layer rule: no imports from api/. The AuditLog is injected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from audit.models import Actor
from auth.errors import ForbiddenError, OrgNotFoundError
from auth.models import NO_ACCESS, EffectiveAccess

if TYPE_CHECKING:
    from audit.store import AuditLog
    from auth.store import MembershipStore, UserStore

logger = logging.getLogger("orgtree.auth")

ROLE_LEVELS: dict[str, int] = {
    "viewer": 0,
    "editor": 1,
    "admin": 2,
    "owner": 3,
}
_UNKNOWN_ROLE_LEVEL = 0


def role_level(role: Optional[str]) -> int:
    """Level of an effective organization role. Unknown or None -> 0."""
    if role is None:
        return _UNKNOWN_ROLE_LEVEL
    return ROLE_LEVELS.get(role, _UNKNOWN_ROLE_LEVEL)


class OrgAccessResolver:
    """Compute EffectiveAccess and enforce minimum roles.

    Nothing is cached: each call reads the user, organization and membership
    fresh so a revoked membership takes effect on the next request.
    """

    def __init__(self, users: UserStore, memberships: MembershipStore, audit_log: AuditLog) -> None:
        self.users = users
        self.memberships = memberships
        self.audit_log = audit_log

    def check_access(self, org_id: int, user_id: int) -> EffectiveAccess:
        org = self.memberships.get_organization(org_id)
        user = self.users.get_by_id(user_id)

        if user is not None and user.role == "superuser":
            # is_owner is computed separately so ownership-transfer logic is not fooled.
            is_owner = org is not None and org.created_by_id == user_id
            return EffectiveAccess(has_access=True, role="owner", is_owner=is_owner)

        if org is None:
            return NO_ACCESS

        if org.created_by_id == user_id:
            return EffectiveAccess(has_access=True, role="owner", is_owner=True)

        membership = self.memberships.get_membership(org_id, user_id)
        if membership is None:
            return NO_ACCESS
        return EffectiveAccess(has_access=True, role=membership.role, is_owner=False)

    def require_permission(self, org_id: int, user_id: int, min_role: str = "viewer") -> EffectiveAccess:
        """Return EffectiveAccess if the user holds at least min_role, else raise.

        Raises:
            ValueError:        min_role is not an organization role.
            OrgNotFoundError:  no access at all (indistinguishable from a missing org).
            ForbiddenError:    access present but below min_role; audited first.
        """
        if min_role not in ROLE_LEVELS:
            raise ValueError(f"Unknown organization role: {min_role!r}")

        access = self.check_access(org_id, user_id)
        if not access.has_access:
            raise OrgNotFoundError()

        user_level = role_level(access.role)
        required_level = ROLE_LEVELS[min_role]
        if user_level < required_level:
            logger.warning(
                "Permission denied: user %s has role %r (%d) but %r (%d) is required for org %s",
                user_id,
                access.role,
                user_level,
                min_role,
                required_level,
                org_id,
            )
            user = self.users.get_by_id(user_id)
            actor = user if user is not None else Actor(id=user_id, name="Unknown")
            self.audit_log.append(
                org_id,
                actor,
                "permission_denied",
                "security",
                "organization_access",
                {
                    "organizationId": org_id,
                    "requiredRole": min_role,
                    "userRole": access.role,
                    "globalRole": user.role if user is not None else None,
                    "userLevel": user_level,
                    "requiredLevel": required_level,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            raise ForbiddenError(reason="permission_denied")

        return access
