"""
tests/test_audit_routes.py -- Integration tests for the audit log endpoints.

Coverage:
  - GET /organizations/{org_id}/audit-logs: admin paging, filters, viewer 403,
    outsider 404, invalid cursor and limit
  - GET /admin/audit-logs and /admin/audit-logs/filters: superuser only, a
    denial is itself audited
"""

from __future__ import annotations

import pytest


@pytest.fixture()
def audited_org(api):
    """A fresh organization with five member_added entries and one security entry."""
    owner = api.env.create_user()
    org_id = api.env.create_org(owner, name="Audited Co")
    for i in range(5):
        api.env.audit_log.append(org_id, owner, "member_added", "member", str(i), {"role": "viewer"})
    api.env.audit_log.append(org_id, owner, "permission_denied", "security")
    return org_id, owner


def _org_logs(org_id: int) -> str:
    return f"/api/v1/organizations/{org_id}/audit-logs"


class TestOrgAuditLogs:
    def test_pages_through_entries_without_overlap(self, api, audited_org) -> None:
        org_id, owner = audited_org
        headers = api.env.auth_headers(owner)
        params = {"action_type": "member_added", "limit": 2}

        seen: list[str] = []
        pages = 0
        cursor = None
        while True:
            query = dict(params, cursor=cursor) if cursor else params
            resp = api.client.get(_org_logs(org_id), params=query, headers=headers)
            assert resp.status_code == 200, resp.text
            page = resp.json()
            pages += 1
            seen.extend(log["entity_id"] for log in page["logs"])
            if not page["has_more"]:
                assert page["next_cursor"] is None
                break
            cursor = page["next_cursor"]

        assert pages == 3
        assert seen == ["4", "3", "2", "1", "0"]

    def test_entity_type_filter(self, api, audited_org) -> None:
        org_id, owner = audited_org
        resp = api.client.get(_org_logs(org_id), params={"entity_type": "security"}, headers=api.env.auth_headers(owner))
        assert resp.status_code == 200
        assert [log["action_type"] for log in resp.json()["logs"]] == ["permission_denied"]

    def test_viewer_is_forbidden(self, api, audited_org) -> None:
        org_id, owner = audited_org
        viewer = api.env.create_user()
        api.env.add_member(org_id, viewer, "viewer", added_by=owner)
        assert api.client.get(_org_logs(org_id), headers=api.env.auth_headers(viewer)).status_code == 403

    def test_outsider_is_not_found(self, api, audited_org) -> None:
        org_id, _ = audited_org
        outsider = api.env.create_user()
        assert api.client.get(_org_logs(org_id), headers=api.env.auth_headers(outsider)).status_code == 404

    def test_invalid_cursor(self, api, audited_org) -> None:
        org_id, owner = audited_org
        resp = api.client.get(_org_logs(org_id), params={"cursor": "garbage"}, headers=api.env.auth_headers(owner))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_limit_too_large(self, api, audited_org) -> None:
        org_id, owner = audited_org
        resp = api.client.get(_org_logs(org_id), params={"limit": 500}, headers=api.env.auth_headers(owner))
        assert resp.status_code == 400


class TestAdminAuditLogs:
    def test_superuser_sees_every_org_with_names(self, api, audited_org) -> None:
        org_id, _ = audited_org
        superuser = api.env.create_user(role="superuser")
        resp = api.client.get(
            "/api/v1/admin/audit-logs",
            params={"org_id": org_id, "limit": 200},
            headers=api.env.auth_headers(superuser),
        )
        assert resp.status_code == 200, resp.text
        logs = resp.json()["logs"]
        assert len(logs) == 6
        assert {log["organization_name"] for log in logs} == {"Audited Co"}

    def test_filter_options(self, api, audited_org) -> None:
        superuser = api.env.create_user(role="superuser")
        resp = api.client.get("/api/v1/admin/audit-logs/filters", headers=api.env.auth_headers(superuser))
        assert resp.status_code == 200
        data = resp.json()
        assert {"member_added", "permission_denied"} <= set(data["action_types"])
        assert {"member", "security"} <= set(data["entity_types"])

    def test_out_of_range_cursor_is_a_validation_error(self, api) -> None:
        superuser = api.env.create_user(role="superuser")
        resp = api.client.get(
            "/api/v1/admin/audit-logs",
            params={"cursor": "2024-01-01T00:00:00+00:00|99999999999999999999999"},
            headers=api.env.auth_headers(superuser),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    @pytest.mark.parametrize("role", ["user", "admin"])
    def test_non_superuser_is_forbidden_and_audited(self, api, role) -> None:
        caller = api.env.create_user(role=role)
        resp = api.client.get("/api/v1/admin/audit-logs", headers=api.env.auth_headers(caller))
        assert resp.status_code == 403

        entry = api.env.audit_entries("permission_denied")[0]
        assert entry.actor_id == caller.id
        assert entry.organization_id is None
        assert entry.entity_data["requiredRoles"] == ["superuser"]
        assert entry.entity_data["userRole"] == role
