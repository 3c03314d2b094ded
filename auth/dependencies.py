"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication, CSRF and roles.

Request pipeline for a protected, state-changing, organization-scoped route:
  1. get_current_user      -- Bearer access token -> User, else 401 (audited)
  2. csrf_protect          -- double-submit check, else 403 (audited)
  3. require_org_role(...) -- effective org role >= minimum, else 404/403

try_get_current_user() is the soft variant (returns None, never audits).
get_current_user() wraps the codec and writes an invalid_token audit entry on
every failure with reason missing_token | invalid_token | expired_token. The
response message is the same generic text for invalid and expired tokens.

Components are read from request.app.state (wired in api/main.py lifespan):
  codec, audit_log, user_store, csrf_guard, access_resolver.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the dependency injection system. No imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, Request

from auth.errors import ForbiddenError, TokenInvalidError, UnauthenticatedError
from auth.models import EffectiveAccess, User


def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def _audit_invalid_token(request: Request, reason: str, error: Optional[str] = None) -> None:
    data = {
        "reason": reason,
        "ipAddress": client_ip(request),
        "path": request.url.path,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if error:
        data["error"] = error
    # Actor is None: token contents cannot be trusted on a failed verification.
    request.app.state.audit_log.append(None, None, "invalid_token", "security", "authentication", data)


def try_get_current_user(request: Request) -> Optional[User]:
    """Return the authenticated User or None. Never raises, never audits."""
    cached = getattr(request.state, "user", None)
    if cached is not None:
        return cached
    token = _bearer_token(request)
    if not token:
        return None
    try:
        claims = request.app.state.codec.verify(token)
    except TokenInvalidError:
        return None
    user = request.app.state.user_store.get_by_id(claims["id"])
    if user is not None:
        request.state.user = user
    return user


def get_current_user(request: Request) -> User:
    """Require a valid Bearer access token. Raises UnauthenticatedError (401).

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    cached = getattr(request.state, "user", None)
    if cached is not None:
        return cached

    token = _bearer_token(request)
    if not token:
        _audit_invalid_token(request, "missing_token")
        raise UnauthenticatedError("Access token required", reason="missing_token")

    try:
        claims = request.app.state.codec.verify(token)
    except TokenInvalidError as exc:
        _audit_invalid_token(request, exc.reason or "invalid_token", exc.detail.get("error"))
        raise

    user = request.app.state.user_store.get_by_id(claims["id"])
    if user is None:
        _audit_invalid_token(request, "invalid_token", "token subject no longer exists")
        raise TokenInvalidError()

    request.state.user = user
    return user


def require_role(*allowed_roles: str) -> Callable[..., User]:
    """Dependency factory: require one of the given GLOBAL roles (user/admin/superuser).

    A denial writes a system-wide permission_denied audit entry and raises 403.
    """

    def dependency(request: Request, user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed_roles:
            request.app.state.audit_log.append(
                None,
                user,
                "permission_denied",
                "security",
                "authorization",
                {
                    "requiredRoles": list(allowed_roles),
                    "userRole": user.role,
                    "path": request.url.path,
                    "method": request.method,
                    "ipAddress": client_ip(request),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
            raise ForbiddenError(reason="global_role")
        return user

    return dependency


require_superuser = require_role("superuser")


def csrf_protect(request: Request, user: User = Depends(get_current_user)) -> None:
    """Double-submit CSRF check for authenticated, state-changing routes."""
    request.app.state.csrf_guard.validate(request, user)


def csrf_protect_if_authenticated(request: Request) -> None:
    """CSRF check only when the request already carries a valid session.

    For routes that also serve anonymous callers (login, signup, logout):
    anonymous requests skip the check.
    """
    user = try_get_current_user(request)
    request.app.state.csrf_guard.validate_if_authenticated(request, user)


def require_org_role(min_role: str = "viewer") -> Callable[..., EffectiveAccess]:
    """Dependency factory: require an effective organization role >= min_role.

    The route must declare an `org_id` path parameter. Returns the caller's
    EffectiveAccess so handlers can branch on is_owner.
    """

    def dependency(org_id: int, request: Request, user: User = Depends(get_current_user)) -> EffectiveAccess:
        return request.app.state.access_resolver.require_permission(org_id, user.id, min_role)

    return dependency
