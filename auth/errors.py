"""
auth/errors.py -- Exception taxonomy for the security core.

Each class carries the HTTP status and the stable error code the API layer
renders. Service code raises these; api/main.py registers a single handler
that turns any AuthError into the standard {"error": {...}} envelope.

Messages on these exceptions are the PUBLIC messages -- deliberately generic.
The precise reason (expired vs bad signature, missing header vs missing
cookie, required vs actual role) travels separately in `reason` / `detail`
and is only ever written to the audit log.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class for security errors mapped to HTTP responses."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None, *, reason: Optional[str] = None, detail: Optional[dict] = None):
        self.message = message or self.default_message
        self.reason = reason
        self.detail = detail or {}
        super().__init__(self.message)


class UnauthenticatedError(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class TokenInvalidError(UnauthenticatedError):
    """Access token failed signature, algorithm, or claim checks."""

    default_message = "Invalid or expired token"

    def __init__(self, message: Optional[str] = None, *, reason: str = "invalid_token", detail: Optional[dict] = None):
        super().__init__(message, reason=reason, detail=detail)


class TokenExpiredError(TokenInvalidError):
    """Access token signature is valid but exp has passed.

    Shares TokenInvalidError's public message so callers cannot tell the two
    apart; only `reason` differs.
    """

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None):
        super().__init__(message, reason="expired_token", detail=detail)


class ForbiddenError(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "Insufficient permissions"


class CSRFError(ForbiddenError):
    """Double-submit validation failed. `code` is one of the CSRF_TOKEN_* values."""

    default_message = "CSRF token validation failed"

    def __init__(self, code: str, reason: str):
        super().__init__(reason=reason)
        self.code = code


class NotFoundError(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class OrgNotFoundError(NotFoundError):
    """No access to the organization. Also raised when it does not exist."""

    default_message = "Organization not found"


class InvalidInputError(AuthError):
    status_code = 400
    code = "validation_error"
    default_message = "Request validation failed."


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."
