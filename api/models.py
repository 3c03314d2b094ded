"""
API request and response models for OrgTree REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route handlers
map between the two with the from_* factory methods colocated here.

Separation of concerns: auth/ and audit/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from audit.models import AuditLogEntry, AuditPage
from auth.models import EffectiveAccess, OrganizationMembership, SessionInfo, User
from auth.tokens import BCRYPT_MAX_BYTES

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MemberRoleEnum(str, Enum):
    admin = "admin"
    editor = "editor"
    viewer = "viewer"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


def _within_bcrypt_limit(value: str) -> str:
    # max_length counts characters; bcrypt counts UTF-8 bytes.
    if len(value.encode("utf-8", errors="surrogatepass")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
    return value


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    Minimum password length is enforced in the route from Settings so it can
    be tuned per deployment. The byte cap matches bcrypt.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=1, max_length=72)

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: str) -> str:
        return _within_bcrypt_limit(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: str) -> str:
        return _within_bcrypt_limit(value)


class RefreshRequest(BaseModel):
    """Optional body for /refresh, /logout and /sessions/revoke-others.

    Browser clients send the refresh secret in the httpOnly cookie; other
    clients may send it here instead. The cookie wins when both are present.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=512)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    old_password: str = Field(min_length=1, max_length=72)
    new_password: str = Field(min_length=1, max_length=72)

    @field_validator("old_password", "new_password")
    @classmethod
    def passwords_within_bcrypt_limit(cls, value: str) -> str:
        return _within_bcrypt_limit(value)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public user view. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    created_at: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, email=user.email, name=user.name, role=user.role, created_at=user.created_at or "")


class TokenResponse(BaseModel):
    """Response for signup, login and refresh.

    refresh_token is the raw secret -- it appears here once and the server
    never echoes it back afterwards.
    """

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    refresh_token_expires_at: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    count: Optional[int] = None


class SessionResponse(BaseModel):
    """One active session. Device/IP/timestamps only -- never the secret or its hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    device_info: Optional[str]
    ip_address: Optional[str]
    created_at: str
    last_used_at: Optional[str]
    expires_at: str
    is_current: bool = False

    @classmethod
    def from_session(cls, session: SessionInfo, current_id: Optional[int] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            device_info=session.device_info,
            ip_address=session.ip_address,
            created_at=session.created_at,
            last_used_at=session.last_used_at,
            expires_at=session.expires_at,
            is_current=session.id == current_id,
        )


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessions: list[SessionResponse]


class CsrfTokenResponse(BaseModel):
    """Response for GET /api/v1/csrf-token. expires_in is in seconds."""

    model_config = ConfigDict(frozen=True)

    csrf_token: str
    expires_in: int


# ---------------------------------------------------------------------------
# Organizations -- access and members
# ---------------------------------------------------------------------------


class AccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: int
    has_access: bool
    role: Optional[str]
    is_owner: bool

    @classmethod
    def from_access(cls, org_id: int, access: EffectiveAccess) -> "AccessResponse":
        return cls(organization_id=org_id, has_access=access.has_access, role=access.role, is_owner=access.is_owner)


class MemberCreate(BaseModel):
    """Request body for POST /organizations/{org_id}/members. Exactly one of user_id / email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: Optional[int] = None
    email: Optional[str] = Field(default=None, max_length=255)
    role: MemberRoleEnum = MemberRoleEnum.viewer

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value


class MemberRoleUpdate(BaseModel):
    role: MemberRoleEnum


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    user_id: int
    role: str
    joined_at: str
    user_name: Optional[str]
    user_email: Optional[str]

    @classmethod
    def from_membership(cls, m: OrganizationMembership) -> "MemberResponse":
        return cls(
            id=m.id,
            organization_id=m.organization_id,
            user_id=m.user_id,
            role=m.role,
            joined_at=m.created_at or "",
            user_name=m.user_name,
            user_email=m.user_email,
        )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: Optional[int]
    organization_name: Optional[str] = None
    actor_id: Optional[int]
    actor_name: Optional[str]
    action_type: str
    entity_type: str
    entity_id: Optional[str]
    entity_data: Optional[dict[str, Any]]
    created_at: str

    @classmethod
    def from_entry(cls, e: AuditLogEntry) -> "AuditLogResponse":
        return cls(
            id=e.id,
            organization_id=e.organization_id,
            organization_name=e.organization_name,
            actor_id=e.actor_id,
            actor_name=e.actor_name,
            action_type=e.action_type,
            entity_type=e.entity_type,
            entity_id=e.entity_id,
            entity_data=e.entity_data,
            created_at=e.created_at,
        )


class AuditPageResponse(BaseModel):
    """Cursor-paginated audit log page. Pass next_cursor back as ?cursor= for the next page."""

    model_config = ConfigDict(frozen=True)

    logs: list[AuditLogResponse]
    has_more: bool
    next_cursor: Optional[str]

    @classmethod
    def from_page(cls, page: AuditPage) -> "AuditPageResponse":
        return cls(
            logs=[AuditLogResponse.from_entry(e) for e in page.entries],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )


class AuditFilterOptionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    action_types: list[str]
    entity_types: list[str]
