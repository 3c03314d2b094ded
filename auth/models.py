"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these dataclasses own domain shape.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

GLOBAL_ROLES = ("user", "admin", "superuser")
MEMBER_ROLES = ("admin", "editor", "viewer")


@dataclass
class User:
    """An authenticated identity.

    role is the GLOBAL role ("user", "admin", "superuser"). It is a different
    vocabulary from organization roles -- a global "admin" has no special
    standing inside an organization it does not own or belong to.
    """

    email: str
    name: str
    role: str = "user"
    id: Optional[int] = None
    hashed_password: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Organization:
    """Tenant root. created_by_id holds the implicit owner role (no membership row)."""

    name: str
    created_by_id: int
    id: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class OrganizationMembership:
    """A user's explicit role inside one organization. Unique per (organization, user)."""

    organization_id: int
    user_id: int
    role: str  # "admin" | "editor" | "viewer"
    id: Optional[int] = None
    added_by_id: Optional[int] = None
    created_at: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None


@dataclass(frozen=True)
class EffectiveAccess:
    """Resolved permission level for one user on one organization.

    Derived per request from global role + ownership + membership and never
    cached. is_owner reflects actual creatorship, independent of role: a
    superuser gets role="owner" everywhere but is_owner only where they
    created the organization.
    """

    has_access: bool
    role: Optional[str] = None  # "owner" | "admin" | "editor" | "viewer" | None
    is_owner: bool = False


NO_ACCESS = EffectiveAccess(has_access=False, role=None, is_owner=False)


@dataclass
class SessionInfo:
    """Public view of a refresh-token row. Never carries the secret or its hash."""

    id: int
    user_id: int
    device_info: Optional[str]
    ip_address: Optional[str]
    created_at: str
    last_used_at: Optional[str]
    expires_at: str
    name: str = ""
    email: str = ""
    role: str = "user"


@dataclass(frozen=True)
class IssuedRefreshToken:
    """Return value of RefreshTokenManager.issue(). `token` is the raw secret, shown once."""

    token: str
    expires_at: str
    id: int


@dataclass(frozen=True)
class RotationResult:
    access_token: str
    refresh_token: str
    refresh_token_expires_at: str
    user: User
