"""
tests/test_admin_routes.py -- Integration tests for /api/admin/*.

Coverage:
  - Role gates: anonymous 401, USER 403, ADMIN vs SUPER_ADMIN-only routes
  - Stats, paginated/filtered user listing
  - Privilege rules on user edits and deletion
  - Invites, settings, activity logs
"""

from __future__ import annotations

import pytest
from starlette.responses import Response

from auth.models import Role
from auth.sessions import create_session


@pytest.fixture
def admin(make_user):
    return make_user(role=Role.ADMIN)


@pytest.fixture
def super_admin(make_user):
    return make_user(role=Role.SUPER_ADMIN)


class TestRoleGates:
    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("GET", "/api/admin/stats"),
            ("GET", "/api/admin/users"),
            ("GET", "/api/admin/invites"),
            ("GET", "/api/admin/settings"),
            ("GET", "/api/admin/logs"),
        ],
    )
    def test_anonymous_is_401(self, client, method, path):
        resp = client.request(method, path)
        assert resp.status_code == 401
        assert resp.json()["success"] is False

    def test_user_is_403(self, client, make_user, auth_headers):
        resp = client.get("/api/admin/stats", headers=auth_headers(make_user()))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_cannot_read_logs(self, client, admin, auth_headers):
        assert client.get("/api/admin/logs", headers=auth_headers(admin)).status_code == 403

    def test_demoted_admin_loses_access_immediately(self, client, stores, admin, auth_headers):
        """Role checks use the stored role, not the token claim."""
        user_store, _ = stores
        headers = auth_headers(admin)
        user_store.update_user(admin.id, role=Role.USER)
        assert client.get("/api/admin/stats", headers=headers).status_code == 403


class TestStatsAndListing:
    def test_stats_shape(self, client, admin, auth_headers):
        resp = client.get("/api/admin/stats", headers=auth_headers(admin))
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["totalUsers"] >= 1
        assert set(data["roleCounts"]) == {"USER", "ADMIN", "SUPER_ADMIN"}
        assert data["usersToday"] >= 1
        assert len(data["recentUsers"]) <= 5
        assert "pendingInvites" in data

    def test_pagination(self, client, admin, make_user, auth_headers):
        for _ in range(3):
            make_user()
        resp = client.get("/api/admin/users", params={"page": 1, "limit": 2}, headers=auth_headers(admin))
        data = resp.json()["data"]
        assert len(data["users"]) == 2
        pagination = data["pagination"]
        assert pagination["limit"] == 2
        assert pagination["total"] >= 4
        assert pagination["totalPages"] == -(-pagination["total"] // 2)

    def test_search_and_role_filter(self, client, admin, make_user, auth_headers):
        target = make_user(username="findme_zebra")
        resp = client.get("/api/admin/users", params={"search": "FINDME"}, headers=auth_headers(admin))
        usernames = [u["username"] for u in resp.json()["data"]["users"]]
        assert usernames == [target.username]

        resp = client.get("/api/admin/users", params={"role": "ADMIN"}, headers=auth_headers(admin))
        assert all(u["role"] == "ADMIN" for u in resp.json()["data"]["users"])

    def test_search_wildcards_are_literal(self, client, admin, make_user, auth_headers):
        make_user(username="under_score")
        make_user(username="underxscore")
        headers = auth_headers(admin)

        resp = client.get("/api/admin/users", params={"search": "%"}, headers=headers)
        assert resp.json()["data"]["users"] == []

        resp = client.get("/api/admin/users", params={"search": "under_s"}, headers=headers)
        assert [u["username"] for u in resp.json()["data"]["users"]] == ["under_score"]

    def test_limit_is_bounded(self, client, admin, auth_headers):
        resp = client.get("/api/admin/users", params={"limit": 1000}, headers=auth_headers(admin))
        assert resp.status_code == 422

    def test_get_missing_user_is_404(self, client, admin, auth_headers):
        assert client.get("/api/admin/users/999999", headers=auth_headers(admin)).status_code == 404


class TestUserEdits:
    def test_admin_can_edit_regular_user(self, client, admin, make_user, auth_headers):
        target = make_user()
        resp = client.patch(
            f"/api/admin/users/{target.id}", json={"email": f"renamed_{target.email}"}, headers=auth_headers(admin)
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["user"]["email"] == f"renamed_{target.email}"

    def test_admin_cannot_edit_other_admin(self, client, admin, make_user, auth_headers):
        other = make_user(role=Role.ADMIN)
        resp = client.patch(f"/api/admin/users/{other.id}", json={"username": "hijacked"}, headers=auth_headers(admin))
        assert resp.status_code == 403

    def test_admin_cannot_change_roles(self, client, admin, make_user, auth_headers):
        target = make_user()
        resp = client.patch(f"/api/admin/users/{target.id}", json={"role": "ADMIN"}, headers=auth_headers(admin))
        assert resp.status_code == 403

    def test_super_admin_can_change_roles(self, client, super_admin, make_user, auth_headers):
        target = make_user()
        resp = client.patch(
            f"/api/admin/users/{target.id}", json={"role": "ADMIN"}, headers=auth_headers(super_admin)
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["role"] == "ADMIN"

    def test_cannot_change_own_role(self, client, super_admin, auth_headers):
        resp = client.patch(
            f"/api/admin/users/{super_admin.id}", json={"role": "USER"}, headers=auth_headers(super_admin)
        )
        assert resp.status_code == 400

    def test_edit_conflict_is_409(self, client, super_admin, make_user, auth_headers):
        target, other = make_user(), make_user()
        resp = client.patch(
            f"/api/admin/users/{target.id}", json={"username": other.username}, headers=auth_headers(super_admin)
        )
        assert resp.status_code == 409


class TestUserDeletion:
    def test_admin_cannot_delete(self, client, admin, make_user, auth_headers):
        target = make_user()
        assert client.delete(f"/api/admin/users/{target.id}", headers=auth_headers(admin)).status_code == 403

    def test_super_admin_deletes_and_cascades_sessions(self, client, stores, super_admin, make_user, auth_headers):
        user_store, _ = stores
        target = make_user()
        create_session(user_store, Response(), target)

        resp = client.delete(f"/api/admin/users/{target.id}", headers=auth_headers(super_admin))
        assert resp.status_code == 200
        assert user_store.get_by_id(target.id) is None
        assert user_store.list_refresh_tokens(target.id) == []

    def test_no_self_deletion(self, client, super_admin, auth_headers):
        resp = client.delete(f"/api/admin/users/{super_admin.id}", headers=auth_headers(super_admin))
        assert resp.status_code == 400


class TestInvites:
    def test_create_list_delete(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        resp = client.post("/api/admin/invites", json={"email": "Newcomer@Example.com"}, headers=headers)
        assert resp.status_code == 201, resp.text
        data = resp.json()["data"]
        invite = data["invite"]
        assert invite["email"] == "newcomer@example.com"
        assert invite["role"] == "USER"
        assert invite["token"] in data["inviteUrl"]

        listed = client.get("/api/admin/invites", headers=headers).json()["data"]["invites"]
        assert invite["id"] in [i["id"] for i in listed]

        assert client.delete(f"/api/admin/invites/{invite['id']}", headers=headers).status_code == 200
        assert client.delete(f"/api/admin/invites/{invite['id']}", headers=headers).status_code == 404

    def test_existing_account_conflicts(self, client, admin, make_user, auth_headers):
        existing = make_user()
        resp = client.post("/api/admin/invites", json={"email": existing.email}, headers=auth_headers(admin))
        assert resp.status_code == 409

    def test_pending_invite_conflicts(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        assert client.post("/api/admin/invites", json={"email": "twice@example.com"}, headers=headers).status_code == 201
        assert client.post("/api/admin/invites", json={"email": "twice@example.com"}, headers=headers).status_code == 409

    def test_only_super_admin_invites_super_admin(self, client, admin, super_admin, auth_headers):
        body = {"email": "boss@example.com", "role": "SUPER_ADMIN"}
        assert client.post("/api/admin/invites", json=body, headers=auth_headers(admin)).status_code == 403
        assert client.post("/api/admin/invites", json=body, headers=auth_headers(super_admin)).status_code == 201


class TestSettings:
    def test_defaults(self, client, admin, auth_headers):
        settings = client.get("/api/admin/settings", headers=auth_headers(admin)).json()["data"]["settings"]
        assert settings["allowPasswordAuth"] is True
        assert settings["allowSelfRegistration"] is True
        assert settings["twoFactorRequired"] is False

    def test_partial_update_merges(self, client, admin, auth_headers):
        headers = auth_headers(admin)
        resp = client.patch("/api/admin/settings", json={"twoFactorRequired": True}, headers=headers)
        assert resp.status_code == 200, resp.text
        try:
            settings = client.get("/api/admin/settings", headers=headers).json()["data"]["settings"]
            assert settings["twoFactorRequired"] is True
            assert settings["allowPasswordAuth"] is True
        finally:
            client.patch("/api/admin/settings", json={"twoFactorRequired": False}, headers=headers)

    def test_unknown_setting_is_422(self, client, admin, auth_headers):
        resp = client.patch("/api/admin/settings", json={"launchMissiles": True}, headers=auth_headers(admin))
        assert resp.status_code == 422


class TestLogs:
    def test_actions_are_logged_and_filterable(self, client, super_admin, make_user, auth_headers):
        target = make_user()
        client.post("/api/auth/login", json={"emailOrUsername": target.username, "password": "Wr0ng!pass"})

        resp = client.get(
            "/api/admin/logs", params={"action": "LOGIN_FAILED"}, headers=auth_headers(super_admin)
        )
        assert resp.status_code == 200, resp.text
        logs = resp.json()["data"]["logs"]
        assert logs and all(entry["action"] == "LOGIN_FAILED" for entry in logs)
        assert logs[0]["details"]["identifier"] == target.username
        assert logs[0]["ipAddress"]

    def test_user_filter_includes_user_info(self, client, super_admin, make_user, auth_headers):
        target = make_user()
        client.post("/api/auth/login", json={"emailOrUsername": target.username, "password": "Passw0rd!"})
        resp = client.get("/api/admin/logs", params={"userId": target.id}, headers=auth_headers(super_admin))
        logs = resp.json()["data"]["logs"]
        assert logs and logs[0]["user"]["username"] == target.username

    def test_bad_date_is_400(self, client, super_admin, auth_headers):
        resp = client.get("/api/admin/logs", params={"startDate": "yesterday"}, headers=auth_headers(super_admin))
        assert resp.status_code == 400

    def test_delete_requires_a_filter(self, client, super_admin, auth_headers):
        assert client.delete("/api/admin/logs", headers=auth_headers(super_admin)).status_code == 400

    def test_delete_older_than_keeps_recent(self, client, super_admin, auth_headers):
        headers = auth_headers(super_admin)
        before = client.get("/api/admin/logs", headers=headers).json()["data"]["pagination"]["total"]
        resp = client.delete("/api/admin/logs", params={"olderThan": 30}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["deleted"] == 0
        after = client.get("/api/admin/logs", headers=headers).json()["data"]["pagination"]["total"]
        # The delete itself is logged.
        assert after == before + 1

    def test_delete_all(self, client, super_admin, auth_headers):
        headers = auth_headers(super_admin)
        resp = client.delete("/api/admin/logs", params={"all": "true"}, headers=headers)
        assert resp.status_code == 200
        remaining = client.get("/api/admin/logs", headers=headers).json()["data"]["logs"]
        assert [entry["action"] for entry in remaining] == ["LOGS_DELETE"]
