"""
tests/test_auth_routes.py -- Integration tests for /api/v1/auth/* and /api/v1/csrf-token.

These tests exercise the full stack: FastAPI routing -> dependency injection
(access token, CSRF) -> stores -> response model serialization.

Coverage:
  - signup / login: tokens, refresh cookie, no-store, generic failure message,
    failed_login audit
  - access token failures on /me: 401 with one generic message, audited reason
  - refresh rotation via cookie and via body, replay detection
  - logout, change-password (CSRF required, revokes every session)
  - session listing, single revoke (ownership), revoke-others
"""

from __future__ import annotations

from auth.tokens import REFRESH_COOKIE, AccessTokenCodec
from conftest import PASSWORD, TEST_SECRET


def _login(api, user, password: str = PASSWORD):
    return api.client.post("/api/v1/auth/login", json={"email": user.email, "password": password})


def _count(api, action: str) -> int:
    return len(api.env.audit_entries(action))


class TestSignupAndLogin:
    def test_signup_creates_user_and_session(self, api) -> None:
        resp = api.client.post(
            "/api/v1/auth/signup",
            json={"name": "New Person", "email": "New.Person@Example.com", "password": PASSWORD},
        )
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["user"]["email"] == "new.person@example.com"
        assert data["user"]["role"] == "user"
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["refresh_token"]
        assert resp.cookies.get(REFRESH_COOKIE) == data["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"
        assert api.env.codec.verify(data["access_token"])["email"] == "new.person@example.com"

    def test_signup_duplicate_email_conflicts(self, api) -> None:
        user = api.env.create_user()
        resp = api.client.post(
            "/api/v1/auth/signup",
            json={"name": "Dup", "email": user.email.upper(), "password": PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_signup_short_password_rejected(self, api) -> None:
        resp = api.client.post(
            "/api/v1/auth/signup",
            json={"name": "Short", "email": "short@example.com", "password": "short-pw"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_signup_password_over_bcrypt_byte_limit_rejected(self, api) -> None:
        # 40 characters, 80 bytes of UTF-8.
        resp = api.client.post(
            "/api/v1/auth/signup",
            json={"name": "Accents", "email": "accents@example.com", "password": "\u00e9" * 40},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert api.env.user_store.get_by_email("accents@example.com") is None

    def test_login_success(self, api) -> None:
        user = api.env.create_user()
        resp = _login(api, user)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["user"]["id"] == user.id
        assert "hashed_password" not in data["user"]
        assert resp.headers["Cache-Control"] == "no-store"
        assert api.env.refresh_manager.validate(data["refresh_token"]) is not None

    def test_login_failures_share_one_message_and_are_audited(self, api) -> None:
        user = api.env.create_user()
        before = _count(api, "failed_login")
        wrong = _login(api, user, "not-the-password")
        unknown = api.client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert _count(api, "failed_login") == before + 2


class TestAccessTokenFailures:
    def test_missing_token(self, api) -> None:
        before = _count(api, "invalid_token")
        resp = api.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        entries = api.env.audit_entries("invalid_token")
        assert len(entries) == before + 1
        assert entries[0].entity_data["reason"] == "missing_token"

    def test_expired_and_forged_tokens_look_identical(self, api) -> None:
        user = api.env.create_user()
        expired = AccessTokenCodec(TEST_SECRET, expire_seconds=-30).issue(user)
        forged = AccessTokenCodec("some-other-secret-that-is-long-enough-1").issue(user)

        resp_expired = api.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {expired}"})
        resp_forged = api.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {forged}"})
        assert resp_expired.status_code == resp_forged.status_code == 401
        assert resp_expired.json() == resp_forged.json()
        assert resp_expired.json()["error"]["message"] == "Invalid or expired token"

        reasons = [e.entity_data["reason"] for e in api.env.audit_entries("invalid_token")[:2]]
        assert reasons == ["invalid_token", "expired_token"]

    def test_me_with_valid_token(self, api) -> None:
        user = api.env.create_user(role="admin")
        resp = api.client.get("/api/v1/auth/me", headers=api.env.auth_headers(user))
        assert resp.status_code == 200
        assert resp.json()["email"] == user.email
        assert resp.json()["role"] == "admin"


class TestRefreshAndLogout:
    def test_refresh_with_cookie_rotates(self, api) -> None:
        user = api.env.create_user()
        first = _login(api, user).json()
        resp = api.client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200, resp.text
        second = resp.json()
        assert second["refresh_token"] != first["refresh_token"]
        assert api.env.refresh_manager.validate(first["refresh_token"]) is None
        assert api.env.refresh_manager.validate(second["refresh_token"]) is not None

    def test_replayed_refresh_token_is_rejected_and_audited(self, api) -> None:
        user = api.env.create_user()
        old = _login(api, user).json()["refresh_token"]
        api.client.cookies.clear()
        assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": old}).status_code == 200

        api.client.cookies.clear()
        before = _count(api, "refresh_token_invalid")
        replay = api.client.post("/api/v1/auth/refresh", json={"refresh_token": old})
        assert replay.status_code == 401
        assert replay.json() == {
            "error": {"code": "unauthorized", "message": "Invalid or expired refresh token", "detail": None}
        }
        assert _count(api, "refresh_token_invalid") == before + 1

    def test_refresh_without_secret(self, api) -> None:
        assert api.client.post("/api/v1/auth/refresh").status_code == 401

    def test_logout_revokes_refresh_token(self, api) -> None:
        user = api.env.create_user()
        token = _login(api, user).json()["refresh_token"]
        resp = api.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert api.env.refresh_manager.validate(token) is None
        api.client.cookies.clear()
        assert api.client.post("/api/v1/auth/refresh", json={"refresh_token": token}).status_code == 401

    def test_logout_without_session_is_ok(self, api) -> None:
        assert api.client.post("/api/v1/auth/logout").status_code == 200


class TestChangePassword:
    def test_requires_csrf(self, api) -> None:
        user = api.env.create_user()
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": PASSWORD, "new_password": "a-brand-new-passphrase"},
            headers=api.env.auth_headers(user),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "CSRF_TOKEN_MISSING"

    def test_changes_password_and_revokes_all_sessions(self, api, csrf_headers) -> None:
        user = api.env.create_user()
        sessions = [_login(api, user).json()["refresh_token"] for _ in range(2)]
        headers = {**api.env.auth_headers(user), **csrf_headers()}
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": PASSWORD, "new_password": "a-brand-new-passphrase"},
            headers=headers,
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["count"] == 2
        assert all(api.env.refresh_manager.validate(t) is None for t in sessions)
        assert _login(api, user).status_code == 401
        assert _login(api, user, "a-brand-new-passphrase").status_code == 200

    def test_new_password_over_bcrypt_byte_limit_rejected(self, api, csrf_headers) -> None:
        user = api.env.create_user()
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": PASSWORD, "new_password": "\u00e9" * 40},
            headers={**api.env.auth_headers(user), **csrf_headers()},
        )
        assert resp.status_code == 422
        assert _login(api, user).status_code == 200

    def test_wrong_old_password(self, api, csrf_headers) -> None:
        user = api.env.create_user()
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": "not-my-password", "new_password": "a-brand-new-passphrase"},
            headers={**api.env.auth_headers(user), **csrf_headers()},
        )
        assert resp.status_code == 401


class TestSessions:
    def test_list_flags_current_session(self, api) -> None:
        user = api.env.create_user()
        api.env.refresh_manager.issue(user.id, device_info="other-device")
        _login(api, user)
        resp = api.client.get("/api/v1/auth/sessions", headers=api.env.auth_headers(user))
        assert resp.status_code == 200
        sessions = resp.json()["sessions"]
        assert len(sessions) == 2
        assert [s["is_current"] for s in sessions].count(True) == 1
        assert all("token_hash" not in s for s in sessions)

    def test_cannot_revoke_someone_elses_session(self, api, csrf_headers) -> None:
        owner = api.env.create_user()
        attacker = api.env.create_user()
        issued = api.env.refresh_manager.issue(owner.id)
        resp = api.client.delete(
            f"/api/v1/auth/sessions/{issued.id}",
            headers={**api.env.auth_headers(attacker), **csrf_headers()},
        )
        assert resp.status_code == 404
        assert api.env.refresh_manager.validate(issued.token) is not None

    def test_revoke_own_session(self, api, csrf_headers) -> None:
        user = api.env.create_user()
        issued = api.env.refresh_manager.issue(user.id)
        resp = api.client.delete(
            f"/api/v1/auth/sessions/{issued.id}",
            headers={**api.env.auth_headers(user), **csrf_headers()},
        )
        assert resp.status_code == 200
        assert api.env.refresh_manager.validate(issued.token) is None

    def test_revoke_others(self, api, csrf_headers) -> None:
        user = api.env.create_user()
        others = [api.env.refresh_manager.issue(user.id).token for _ in range(2)]
        current = _login(api, user).json()["refresh_token"]
        resp = api.client.post(
            "/api/v1/auth/sessions/revoke-others",
            headers={**api.env.auth_headers(user), **csrf_headers()},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["count"] == 2
        assert api.env.refresh_manager.validate(current) is not None
        assert all(api.env.refresh_manager.validate(t) is None for t in others)


def test_csrf_token_endpoint_sets_cookie(api) -> None:
    resp = api.client.get("/api/v1/csrf-token")
    assert resp.status_code == 200
    token = resp.json()["csrf_token"]
    assert resp.cookies.get("csrf-token") == token
    assert api.env.csrf_guard.verify(token)
