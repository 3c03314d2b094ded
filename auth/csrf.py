"""
auth/csrf.py -- Double-submit cookie CSRF protection with HMAC-signed tokens.

Flow:
  1. Client calls GET /api/v1/csrf-token. The server mints a random 128-bit
     value, signs it (HMAC-SHA256), sets the signed value as the `csrf-token`
     cookie and returns it in the body.
  2. For every state-changing request the client echoes the value in the
     X-CSRF-Token header.
  3. validate() requires both, verifies each signature independently, then
     compares the two in constant time.

Tokens are self-contained signed values -- nothing is stored server-side.
A cross-site attacker can make the browser send the cookie but cannot read
it to forge the header, and cannot mint a valid value without the secret.

Failure codes (all 403):
  CSRF_TOKEN_MISSING   reason missing_header_token | missing_cookie_token
  CSRF_TOKEN_INVALID   reason invalid_header_signature | invalid_cookie_signature
  CSRF_TOKEN_MISMATCH  reason token_mismatch
Every failure writes a system-wide csrf_validation_failed audit entry.

Layer rule: no imports from api/. The AuditLog is injected.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from starlette.requests import Request

from auth.errors import CSRFError

if TYPE_CHECKING:
    from audit.store import AuditLog

CSRF_HEADER = "X-CSRF-Token"
CSRF_COOKIE = "csrf-token"
CSRF_COOKIE_MAX_AGE = 24 * 60 * 60
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

CSRF_TOKEN_MISSING = "CSRF_TOKEN_MISSING"
CSRF_TOKEN_INVALID = "CSRF_TOKEN_INVALID"
CSRF_TOKEN_MISMATCH = "CSRF_TOKEN_MISMATCH"


# ---------------------------------------------------------------------------
# Token primitives
# ---------------------------------------------------------------------------


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _signature(token: str, secret: str) -> str:
    return _b64(hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).digest())


def sign_csrf_token(token: str, secret: str) -> str:
    """Return `<token>.<signature>`. Raises RuntimeError if no secret is configured."""
    if not secret:
        raise RuntimeError("CSRF_SECRET or SECRET_KEY must be configured")
    return f"{token}.{_signature(token, secret)}"


def verify_csrf_token(signed_token: Any, secret: str) -> bool:
    """True only for a well-formed `<token>.<signature>` signed with `secret`."""
    if not secret or not signed_token or not isinstance(signed_token, str):
        return False
    parts = signed_token.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return False
    expected = _signature(parts[0], secret)
    return hmac.compare_digest(parts[1].encode("utf-8"), expected.encode("utf-8"))


def compare_csrf_tokens(first: Any, second: Any) -> bool:
    """Constant-time equality of two token strings."""
    if not first or not second or not isinstance(first, str) or not isinstance(second, str):
        return False
    return hmac.compare_digest(first.encode("utf-8"), second.encode("utf-8"))


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class CSRFGuard:
    """Mint and validate double-submit CSRF tokens.

    Usage:
        guard = CSRFGuard(settings.effective_csrf_secret, audit_log)
        signed = guard.create_token()
        guard.validate(request, user)           # raises CSRFError
    """

    def __init__(self, secret: str, audit_log: AuditLog) -> None:
        self._secret = secret
        self.audit_log = audit_log

    def create_token(self) -> str:
        return sign_csrf_token(secrets.token_urlsafe(16), self._secret)

    def verify(self, signed_token: Any) -> bool:
        return verify_csrf_token(signed_token, self._secret)

    def validate(self, request: Request, user: Optional[Any] = None) -> None:
        """Raise CSRFError unless the request carries a valid, matching token pair.

        GET, HEAD and OPTIONS pass unconditionally. `user` is only used as
        the audit actor.
        """
        if request.method.upper() in SAFE_METHODS:
            return

        header_token = request.headers.get(CSRF_HEADER)
        cookie_token = request.cookies.get(CSRF_COOKIE)

        if not header_token or not cookie_token:
            reason = "missing_header_token" if not header_token else "missing_cookie_token"
            self._fail(request, user, CSRF_TOKEN_MISSING, reason)

        header_valid = self.verify(header_token)
        cookie_valid = self.verify(cookie_token)
        if not header_valid or not cookie_valid:
            reason = "invalid_header_signature" if not header_valid else "invalid_cookie_signature"
            self._fail(request, user, CSRF_TOKEN_INVALID, reason)

        if not compare_csrf_tokens(header_token, cookie_token):
            self._fail(request, user, CSRF_TOKEN_MISMATCH, "token_mismatch")

    def validate_if_authenticated(self, request: Request, user: Optional[Any]) -> None:
        """Same as validate(), but anonymous requests skip the check entirely.

        Anonymous callers hold no session, so a forged request made on their
        behalf has no authority to abuse.
        """
        if user is None:
            return
        self.validate(request, user)

    def _fail(self, request: Request, user: Optional[Any], code: str, reason: str) -> None:
        self.audit_log.append(
            None,
            user,
            "csrf_validation_failed",
            "security",
            "csrf_protection",
            {
                "reason": reason,
                "path": request.url.path,
                "method": request.method,
                "ipAddress": request.client.host if request.client else None,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        raise CSRFError(code, reason)


def set_csrf_cookie(response, signed_token: str, secure: bool = False) -> None:
    """Set the CSRF cookie. httponly=False: the frontend reads it to fill the header."""
    response.set_cookie(
        CSRF_COOKIE,
        value=signed_token,
        httponly=False,
        samesite="strict",
        secure=secure,
        max_age=CSRF_COOKIE_MAX_AGE,
        path="/",
    )
