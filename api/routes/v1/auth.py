"""
api/routes/v1/auth.py -- Authentication and session management REST endpoints.

Routes:
  POST   /api/v1/auth/signup                 -- create account; returns tokens
  POST   /api/v1/auth/login                  -- password login; returns tokens
  POST   /api/v1/auth/refresh                -- rotate refresh token; new token pair
  POST   /api/v1/auth/logout                 -- revoke refresh token, clear cookie
  GET    /api/v1/auth/me                     -- current user (requires auth)
  POST   /api/v1/auth/change-password        -- new password, revokes every session
  GET    /api/v1/auth/sessions               -- list active sessions
  DELETE /api/v1/auth/sessions/{session_id}  -- revoke one of your sessions
  POST   /api/v1/auth/sessions/revoke-others -- revoke all sessions but the current one

Security:
  [H2] signup/login share LOGIN_RATE_LIMIT per IP; refresh uses REFRESH_RATE_LIMIT.
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a token.
  Refresh secret: httpOnly cookie scoped to /api/v1/auth, also accepted in the
       body for non-browser clients. The cookie wins when both are present.
  CSRF: authenticated state-changing routes depend on csrf_protect. login,
       signup and logout use csrf_protect_if_authenticated because anonymous
       callers hold no session to abuse.
  IDOR guard: DELETE /sessions/{id} passes user_id to the manager; its WHERE
       clause requires both to match.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import LOGIN_LIMIT, REFRESH_LIMIT, limiter
from api.models import (
    ChangePasswordRequest,
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import client_ip, csrf_protect, csrf_protect_if_authenticated, get_current_user
from auth.errors import ConflictError, InvalidInputError, NotFoundError, UnauthenticatedError
from auth.models import User
from auth.sessions import RefreshTokenManager
from auth.store import UserStore
from auth.tokens import (
    REFRESH_COOKIE,
    authenticate_user,
    clear_refresh_cookie,
    hash_password,
    set_refresh_cookie,
    verify_password,
)
from core.config import get_settings

logger = logging.getLogger("orgtree.api")

# Auth policy:
# - POST   /auth/signup, /auth/login:       public, rate-limited, CSRF only if already signed in
# - POST   /auth/refresh:                   refresh secret is the credential, rate-limited
# - POST   /auth/logout:                    public, CSRF only if already signed in
# - GET    /auth/me, /auth/sessions:        requires auth (get_current_user)
# - POST   /auth/change-password:           requires auth + CSRF
# - DELETE /auth/sessions/{id}:             requires auth + CSRF + ownership check in manager
# - POST   /auth/sessions/revoke-others:    requires auth + CSRF
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _refresh_secret(request: Request, body: Optional[RefreshRequest]) -> Optional[str]:
    cookie = request.cookies.get(REFRESH_COOKIE)
    if cookie:
        return cookie
    return body.refresh_token if body is not None else None


def _check_password_policy(password: str) -> None:
    min_length = get_settings().min_password_length
    if len(password) < min_length:
        raise InvalidInputError(f"Password must be at least {min_length} characters.")


def _token_response(
    request: Request,
    user: User,
    access_token: str,
    refresh_token: str,
    refresh_expires_at: str,
    status_code: int = 200,
) -> JSONResponse:
    settings = get_settings()
    manager: RefreshTokenManager = request.app.state.refresh_manager
    resp = JSONResponse(
        status_code=status_code,
        content=TokenResponse(
            user=UserResponse.from_user(user),
            access_token=access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=request.app.state.codec.expire_seconds,
            refresh_token=refresh_token,
            refresh_token_expires_at=refresh_expires_at,
        ).model_dump(),
    )
    set_refresh_cookie(resp, refresh_token, manager.max_age_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _start_session(request: Request, user: User, status_code: int = 200) -> JSONResponse:
    """Issue an access token and a new refresh token for a freshly authenticated user."""
    access_token = request.app.state.codec.issue(user)
    issued = request.app.state.refresh_manager.issue(
        user.id,
        ip_address=client_ip(request),
        device_info=request.headers.get("User-Agent"),
    )
    return _token_response(request, user, access_token, issued.token, issued.expires_at, status_code)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(LOGIN_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post(
    "/auth/signup",
    response_model=TokenResponse,
    status_code=201,
    dependencies=[Depends(csrf_protect_if_authenticated)],
)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create a user account with the global role "user" and sign it in."""
    _check_password_policy(body.password)
    user_store: UserStore = request.app.state.user_store
    new_user = User(email=body.email, name=body.name, hashed_password=hash_password(body.password))
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise ConflictError("An account with that email already exists.") from exc

    user = user_store.get_by_id(user_id)
    logger.info("New account created: user %s", user_id)
    return _start_session(request, user, status_code=201)


@limiter.limit(LOGIN_LIMIT)  # [H2]
@router.post("/auth/login", response_model=TokenResponse, dependencies=[Depends(csrf_protect_if_authenticated)])
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Uses authenticate_user() which includes timing equalization [C1] and
    writes the failed_login audit entry. Unknown email and wrong password
    get the same generic error.
    """
    user = authenticate_user(
        request.app.state.user_store,
        body.email,
        body.password,
        audit_log=request.app.state.audit_log,
        ip_address=client_ip(request),
    )
    if user is None:
        raise UnauthenticatedError("Invalid email or password.", reason="bad_credentials")
    return _start_session(request, user)


@limiter.limit(REFRESH_LIMIT)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh secret for a new access token and a new refresh secret.

    The presented secret is revoked by the rotation. Presenting it again --
    a replay, or a second racing request -- fails and is audited as
    refresh_token_invalid.
    """
    secret = _refresh_secret(request, body)
    if not secret:
        raise UnauthenticatedError("Refresh token required", reason="missing_refresh_token")

    result = request.app.state.refresh_manager.rotate(
        secret,
        ip_address=client_ip(request),
        device_info=request.headers.get("User-Agent"),
    )
    if result is None:
        request.app.state.audit_log.append(
            None,
            None,
            "refresh_token_invalid",
            "security",
            "authentication",
            {
                "reason": "invalid_or_expired_refresh_token",
                "ipAddress": client_ip(request),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        resp = JSONResponse(
            status_code=401,
            content=ErrorResponse(
                error=ErrorDetail(code="unauthorized", message="Invalid or expired refresh token")
            ).model_dump(),
        )
        clear_refresh_cookie(resp)
        return resp

    return _token_response(
        request,
        result.user,
        result.access_token,
        result.refresh_token,
        result.refresh_token_expires_at,
    )


@router.post("/auth/logout", response_model=MessageResponse, dependencies=[Depends(csrf_protect_if_authenticated)])
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the presented refresh secret (if any) and clear the cookie. Always 200."""
    secret = _refresh_secret(request, body)
    if secret:
        request.app.state.refresh_manager.revoke(secret)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump(exclude_none=True))
    clear_refresh_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return UserResponse.from_user(current_user)


@router.post("/auth/change-password", response_model=MessageResponse, dependencies=[Depends(csrf_protect)])
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Replace the caller's password and revoke every session.

    The caller must sign in again on every device; the access token in hand
    keeps working until it expires.
    """
    if current_user.hashed_password is None or not verify_password(body.old_password, current_user.hashed_password):
        raise UnauthenticatedError("Current password is incorrect.", reason="invalid_password")
    if body.old_password == body.new_password:
        raise InvalidInputError("New password must be different from current password.")
    _check_password_policy(body.new_password)

    user_store: UserStore = request.app.state.user_store
    if not user_store.update_password(current_user.id, hash_password(body.new_password)):
        raise NotFoundError("User not found.")
    revoked = request.app.state.refresh_manager.revoke_all(current_user.id)
    request.app.state.audit_log.append(
        None,
        current_user,
        "password_changed",
        "security",
        "user",
        {
            "sessionsRevoked": revoked,
            "ipAddress": client_ip(request),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    resp = JSONResponse(
        content=MessageResponse(message="Password changed. Please log in again.", count=revoked).model_dump()
    )
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/sessions", response_model=SessionListResponse)
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> SessionListResponse:
    """List the caller's active sessions. The one holding the request's refresh cookie is flagged is_current."""
    manager: RefreshTokenManager = request.app.state.refresh_manager
    current_id = None
    secret = request.cookies.get(REFRESH_COOKIE)
    if secret:
        current = manager.validate(secret)
        if current is not None and current.user_id == current_user.id:
            current_id = current.id
    sessions = manager.list_sessions(current_user.id)
    return SessionListResponse(sessions=[SessionResponse.from_session(s, current_id) for s in sessions])


@router.delete("/auth/sessions/{session_id}", response_model=MessageResponse, dependencies=[Depends(csrf_protect)])
def revoke_session(
    request: Request,
    session_id: int,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Revoke one of the caller's sessions. Another user's session id is a 404 [IDOR guard]."""
    if not request.app.state.refresh_manager.revoke_session(session_id, current_user.id):
        raise NotFoundError("Session not found.")
    return MessageResponse(message="Session revoked.")


@router.post("/auth/sessions/revoke-others", response_model=MessageResponse, dependencies=[Depends(csrf_protect)])
def revoke_other_sessions(
    request: Request,
    body: Optional[RefreshRequest] = None,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """Revoke every session except the one holding the presented refresh secret."""
    secret = _refresh_secret(request, body)
    if not secret:
        raise InvalidInputError("No current session found.")
    count = request.app.state.refresh_manager.revoke_others(current_user.id, secret)
    return MessageResponse(message=f"Revoked {count} other session(s).", count=count)
