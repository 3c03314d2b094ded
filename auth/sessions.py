"""
auth/sessions.py -- Refresh token manager: issuance, validation, rotation, revocation, cleanup.

Lifecycle of one row:
    Active --revoke/rotate--> Revoked --(7 days)--> deleted by cleanup()
    Active --time passes----> Expired --------------> deleted by cleanup()
Nothing leaves Revoked or Expired. "Active" everywhere below means
revoked_at IS NULL AND expires_at > now.

Storage:
  Only SHA-256(secret) is stored (see auth/tokens.hash_refresh_token). The raw
  secret is returned exactly once by issue()/rotate() and cannot be recovered
  from the table.

Rotation is exactly-once:
  rotate() runs inside one transaction and starts with a CONDITIONAL update
  that flips revoked_at only where the row is still active. The rowcount of
  that update is the decision: 1 means this call won and goes on to insert
  the replacement; 0 means the secret was unknown, expired, already revoked
  or was just rotated by a concurrent caller -- return None with no side
  effects. Two racing rotations of the same secret cannot both succeed, so
  a stolen-and-replayed refresh token yields at most one new session.

No process-local cache: every call reads the store, so revocation takes
effect immediately across all server instances.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, and_, func, or_, select
from sqlalchemy.engine import Engine

from auth.models import IssuedRefreshToken, RotationResult, SessionInfo, User
from auth.store import users
from auth.tokens import AccessTokenCodec, generate_refresh_token, hash_refresh_token
from core.database import iso_offset, now_iso

logger = logging.getLogger("orgtree.sessions")

REFRESH_TOKEN_TTL_DAYS = 7
REVOKED_RETENTION_DAYS = 7

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("device_info", String(512)),  # User-Agent at issuance
    Column("ip_address", String(45)),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
    Column("revoked_at", String(32)),
    Index("ix_refresh_tokens_user", "user_id", "revoked_at"),
)


def _active(now: str):
    return and_(refresh_tokens.c.revoked_at.is_(None), refresh_tokens.c.expires_at > now)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class RefreshTokenManager:
    """Repository + service for refresh tokens.

    Usage:
        manager = RefreshTokenManager(engine, codec)
        issued = manager.issue(user.id, ip_address="10.0.0.1", device_info="Firefox")
        session = manager.validate(issued.token)        # SessionInfo or None
        result = manager.rotate(issued.token)           # RotationResult or None
        manager.revoke(result.refresh_token)
    """

    def __init__(
        self,
        engine: Engine,
        codec: AccessTokenCodec,
        expire_days: int = REFRESH_TOKEN_TTL_DAYS,
        revoked_retention_days: int = REVOKED_RETENTION_DAYS,
    ) -> None:
        self.engine = engine
        self.codec = codec
        self.expire_days = expire_days
        self.revoked_retention_days = revoked_retention_days
        metadata.create_all(self.engine)

    @property
    def max_age_seconds(self) -> int:
        return self.expire_days * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Issue / validate
    # ------------------------------------------------------------------

    def issue(
        self,
        user_id: int,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> IssuedRefreshToken:
        """Create a new session for user_id and return the raw secret (once)."""
        with self.engine.begin() as conn:
            return self._insert(conn, user_id, ip_address, device_info)

    def validate(self, token) -> Optional[SessionInfo]:
        """Return the session for an active secret, or None. Never raises on bad input.

        A hit stamps last_used_at for the sessions list. It does NOT extend
        expires_at -- a refresh token's lifetime is fixed at issuance.
        """
        if not token or not isinstance(token, str):
            return None
        token_hash = hash_refresh_token(token)
        now = now_iso()
        with self.engine.begin() as conn:
            row = conn.execute(
                _session_select().where(and_(refresh_tokens.c.token_hash == token_hash, _active(now)))
            ).fetchone()
            if row is None:
                return None
            conn.execute(refresh_tokens.update().where(refresh_tokens.c.id == row.id).values(last_used_at=now))
        session = _row_to_session(row)
        session.last_used_at = now
        return session

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(
        self,
        old_token,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> Optional[RotationResult]:
        """Exchange an active secret for a new access token + refresh secret.

        Returns None, with no side effects, if old_token is not active. On
        success the old secret is revoked in the same transaction that stores
        the new one, so it can never validate again.
        """
        if not old_token or not isinstance(old_token, str):
            return None
        token_hash = hash_refresh_token(old_token)
        now = now_iso()
        with self.engine.begin() as conn:
            flipped = conn.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.token_hash == token_hash, _active(now)))
                .values(revoked_at=now, last_used_at=now)
            )
            if flipped.rowcount != 1:
                return None
            row = conn.execute(
                select(users).select_from(refresh_tokens.join(users, refresh_tokens.c.user_id == users.c.id))
                .where(refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
            if row is None:
                # Owner deleted; the orphaned secret stays revoked.
                logger.warning("Refresh token rotated for a missing user; no new session issued")
                return None
            user = User(id=row.id, email=row.email, name=row.name, role=row.role, created_at=row.created_at)
            issued = self._insert(conn, user.id, ip_address, device_info)
            # Signing inside the transaction: if it fails, the old secret stays active.
            access_token = self.codec.issue(user)
        return RotationResult(
            access_token=access_token,
            refresh_token=issued.token,
            refresh_token_expires_at=issued.expires_at,
            user=user,
        )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token) -> bool:
        """Revoke one active secret. Idempotent: a second call returns False."""
        if not token or not isinstance(token, str):
            return False
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.token_hash == hash_refresh_token(token), _active(now)))
                .values(revoked_at=now)
            )
        return result.rowcount > 0

    def revoke_session(self, session_id: int, user_id: int) -> bool:
        """Revoke a session by id. user_id is checked so users can only revoke their own (IDOR guard)."""
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(
                    and_(
                        refresh_tokens.c.id == session_id,
                        refresh_tokens.c.user_id == user_id,
                        _active(now),
                    )
                )
                .values(revoked_at=now)
            )
        return result.rowcount > 0

    def revoke_all(self, user_id: int) -> int:
        """Revoke every active session for user_id. Used on password change or compromise."""
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.user_id == user_id, _active(now)))
                .values(revoked_at=now)
            )
        if result.rowcount:
            logger.info("Revoked %d session(s) for user %s", result.rowcount, user_id)
        return result.rowcount

    def revoke_others(self, user_id: int, current_token: str) -> int:
        """Revoke every active session for user_id except the one holding current_token."""
        now = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(
                    and_(
                        refresh_tokens.c.user_id == user_id,
                        refresh_tokens.c.token_hash != hash_refresh_token(current_token),
                        _active(now),
                    )
                )
                .values(revoked_at=now)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Listing / cleanup
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: int) -> list[SessionInfo]:
        """Active sessions for user_id, most recently used first."""
        now = now_iso()
        last_seen = func.coalesce(refresh_tokens.c.last_used_at, refresh_tokens.c.created_at)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _session_select()
                .where(and_(refresh_tokens.c.user_id == user_id, _active(now)))
                .order_by(last_seen.desc(), refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def cleanup(self) -> int:
        """Delete expired rows and rows revoked more than revoked_retention_days ago.

        Runs on a schedule (api/main.py). Errors are logged, never raised.
        """
        now = now_iso()
        revoked_cutoff = iso_offset(days=-self.revoked_retention_days)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    refresh_tokens.delete().where(
                        or_(
                            refresh_tokens.c.expires_at < now,
                            and_(refresh_tokens.c.revoked_at.is_not(None), refresh_tokens.c.revoked_at < revoked_cutoff),
                        )
                    )
                )
        except Exception:
            logger.exception("Refresh token cleanup failed")
            return 0
        if result.rowcount:
            logger.info("Cleaned up %d expired/revoked refresh tokens", result.rowcount)
        return result.rowcount

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _insert(self, conn, user_id: int, ip_address: Optional[str], device_info: Optional[str]) -> IssuedRefreshToken:
        token = generate_refresh_token()
        now = now_iso()
        expires_at = iso_offset(days=self.expire_days)
        result = conn.execute(
            refresh_tokens.insert().values(
                user_id=user_id,
                token_hash=hash_refresh_token(token),
                device_info=device_info[:512] if device_info else None,
                ip_address=ip_address,
                expires_at=expires_at,
                created_at=now,
                last_used_at=now,
            )
        )
        return IssuedRefreshToken(token=token, expires_at=expires_at, id=result.inserted_primary_key[0])


def _session_select():
    return select(
        refresh_tokens.c.id,
        refresh_tokens.c.user_id,
        refresh_tokens.c.device_info,
        refresh_tokens.c.ip_address,
        refresh_tokens.c.created_at,
        refresh_tokens.c.last_used_at,
        refresh_tokens.c.expires_at,
        users.c.name,
        users.c.email,
        users.c.role,
    ).select_from(refresh_tokens.join(users, refresh_tokens.c.user_id == users.c.id))


def _row_to_session(row) -> SessionInfo:
    return SessionInfo(
        id=row.id,
        user_id=row.user_id,
        device_info=row.device_info,
        ip_address=row.ip_address,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        expires_at=row.expires_at,
        name=row.name,
        email=row.email,
        role=row.role,
    )
