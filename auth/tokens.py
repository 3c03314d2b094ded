"""
auth/tokens.py -- Access token codec, password hashing, and refresh-secret helpers.

Security design decisions:
  JWT: python-jose with HS256. The algorithm is pinned on BOTH sides:
       issue() signs with HS256 and verify() passes algorithms=["HS256"], so a
       token whose header names any other algorithm (HS512, RS256, "none") is
       rejected -- accepting the header's algorithm is the classic
       algorithm-confusion attack. Claims: id, email, name, role, iat, exp.
       Lifetime 15 minutes.

       verify() raises TokenExpiredError or TokenInvalidError. Both carry the
       same public message ("Invalid or expired token"); only `reason`
       differs, and the request dependency writes that to the audit log.

       An empty signing secret fails closed: verify() rejects everything and
       issue() refuses to sign. There is no fallback secret.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

  Refresh secrets: secrets.token_urlsafe(32) -- 256 bits of entropy. Only the
       SHA-256 hex digest is stored. A fast hash is correct here: the input is
       a high-entropy random value, not a password, so brute force is
       infeasible and lookups stay O(1) through the UNIQUE index.

Layer rule: no imports from api/. audit/ is used only through the AuditLog
instance passed in by the caller.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpiredError, TokenInvalidError

if TYPE_CHECKING:
    from audit.store import AuditLog
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("orgtree.auth")

ALGORITHM = "HS256"
ACCESS_TOKEN_TTL_SECONDS = 900
_REQUIRED_CLAIMS = ("id", "email", "role")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt 5 raises ValueError past this many bytes; older releases truncate.
BCRYPT_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must keep plain within BCRYPT_MAX_BYTES of UTF-8; the request
    models in api/models.py reject anything longer.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("orgtree_timing_dummy")


# ---------------------------------------------------------------------------
# Access token codec
# ---------------------------------------------------------------------------


class AccessTokenCodec:
    """Issue and verify short-lived signed access tokens.

    Usage:
        codec = AccessTokenCodec(settings.secret_key)
        token = codec.issue(user)
        claims = codec.verify(token)   # raises TokenExpiredError / TokenInvalidError
    """

    def __init__(self, secret_key: str, expire_seconds: int = ACCESS_TOKEN_TTL_SECONDS) -> None:
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds

    @property
    def configured(self) -> bool:
        return bool(self._secret_key)

    def issue(self, user: Any) -> str:
        """Encode {id, email, name, role} with iat/exp. `user` needs those attributes."""
        if not self._secret_key:
            raise RuntimeError("SECRET_KEY is not configured; refusing to sign access tokens.")
        now = datetime.now(timezone.utc)
        payload = {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "iat": now,
            "exp": now + timedelta(seconds=self.expire_seconds),
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def verify(self, token: Optional[str]) -> dict:
        """Return verified claims or raise TokenExpiredError / TokenInvalidError."""
        if not self._secret_key:
            logger.error("Access token rejected: SECRET_KEY is not configured")
            raise TokenInvalidError(detail={"error": "signing secret not configured"})
        if not token or not isinstance(token, str):
            raise TokenInvalidError(detail={"error": "empty token"})
        try:
            claims = jwt.decode(token, self._secret_key, algorithms=[ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpiredError(detail={"error": str(exc)}) from exc
        except JWTError as exc:
            raise TokenInvalidError(detail={"error": str(exc)}) from exc
        missing = [c for c in _REQUIRED_CLAIMS if c not in claims]
        if missing:
            raise TokenInvalidError(detail={"error": f"missing claims: {', '.join(missing)}"})
        return claims


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(
    store: UserStore,
    email: str,
    password: str,
    audit_log: Optional[AuditLog] = None,
    ip_address: Optional[str] = None,
) -> Optional[User]:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as a real check)
    - Wrong password: bcrypt runs against the real hash

    Failures are written to the audit log as system-wide `failed_login`
    events with reason user_not_found / invalid_password. The caller returns
    the same generic error for both.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        _audit_failed_login(audit_log, None, email, "user_not_found", ip_address)
        return None
    if not verify_password(password, user.hashed_password):
        _audit_failed_login(audit_log, user, email, "invalid_password", ip_address)
        return None
    return user


def _audit_failed_login(audit_log, actor, email: str, reason: str, ip_address: Optional[str]) -> None:
    if audit_log is None:
        return
    audit_log.append(
        None,
        actor,
        "failed_login",
        "security",
        "login",
        {
            "email": email,
            "reason": reason,
            "ipAddress": ip_address,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


# ---------------------------------------------------------------------------
# Refresh secrets
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque refresh secret (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


def hash_refresh_token(token: str) -> str:
    """Return the SHA-256 hex digest stored in place of the secret.

    Accepts any str. surrogatepass lets a lone surrogate hash (to a value no
    issued secret can have) instead of raising UnicodeEncodeError.
    """
    return hashlib.sha256(token.encode("utf-8", errors="surrogatepass")).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"


def set_refresh_cookie(response, token: str, max_age: int, secure: bool = False) -> None:
    """Write the refresh secret as an httpOnly cookie scoped to the auth routes.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    path: only the auth endpoints receive it, not every API call.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=secure,
        max_age=max_age,
        path=REFRESH_COOKIE_PATH,
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
