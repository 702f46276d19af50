"""
tests/test_page_gating.py -- Redirect rules for page routes.

Two layers:
  - decide_redirect()/safe_next() as pure functions (every branch)
  - the page_gating middleware end-to-end through the ASGI stack, using a
    client with follow_redirects=False so Location headers stay visible

No page routes are served, so a request that passes the gate ends in a 404
JSON envelope -- the assertion is "not a redirect", never "200".
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from auth.gating import FORBIDDEN_MESSAGE, LOGIN_REQUIRED_MESSAGE, decide_redirect, home_path, safe_next
from auth.models import Role
from auth.tokens import create_access_token, create_refresh_token
from core.config import get_settings


class TestDecideRedirect:
    @pytest.mark.parametrize("path", ["/dashboard", "/dashboard/settings", "/profile", "/admin", "/admin/users"])
    def test_anonymous_protected_goes_to_login(self, path):
        target = decide_redirect(path, None)
        parsed = urlparse(target)
        assert parsed.path == "/login"
        query = parse_qs(parsed.query)
        assert query["from"] == [path]
        assert query["error"] == [LOGIN_REQUIRED_MESSAGE]

    def test_user_on_admin_goes_to_dashboard(self):
        target = decide_redirect("/admin/users", "USER")
        parsed = urlparse(target)
        assert parsed.path == "/dashboard"
        assert parse_qs(parsed.query)["error"] == [FORBIDDEN_MESSAGE]

    @pytest.mark.parametrize("role", ["ADMIN", "SUPER_ADMIN"])
    def test_admins_pass_admin_routes(self, role):
        assert decide_redirect("/admin", role) is None

    def test_user_passes_dashboard(self):
        assert decide_redirect("/dashboard", "USER") is None

    @pytest.mark.parametrize(("role", "home"), [("USER", "/dashboard"), ("ADMIN", "/admin"), ("SUPER_ADMIN", "/admin")])
    @pytest.mark.parametrize("page", ["/login", "/register"])
    def test_signed_in_users_bounce_off_auth_pages(self, role, home, page):
        assert decide_redirect(page, role) == home

    def test_anonymous_can_see_auth_pages(self):
        assert decide_redirect("/login", None) is None
        assert decide_redirect("/register", None) is None

    @pytest.mark.parametrize("path", ["/api/admin/stats", "/", "/about", "/administrator", "/dashboards"])
    def test_other_paths_pass_through(self, path):
        assert decide_redirect(path, None) is None

    def test_custom_admin_base_path(self):
        assert decide_redirect("/console/users", "USER", "/console").startswith("/dashboard")
        assert decide_redirect("/admin", "USER", "/console") is None

    def test_unknown_role_counts_as_anonymous(self):
        assert decide_redirect("/dashboard", "ROOT").startswith("/login")


class TestSafeNext:
    @pytest.mark.parametrize("target", ["/dashboard", "/admin/users?page=2"])
    def test_relative_paths_accepted(self, target):
        assert safe_next(target) == target

    @pytest.mark.parametrize(
        "target", [None, "", "https://attacker.com", "//attacker.com", "/\\attacker.com", "javascript:alert(1)"]
    )
    def test_off_site_targets_rejected(self, target):
        assert safe_next(target) == "/dashboard"

    def test_off_site_target_falls_back_to_role_home(self):
        assert safe_next("//evil.com", home_path(Role.ADMIN, "/console")) == "/console"
        assert safe_next("//evil.com", home_path(Role.USER)) == "/dashboard"


class TestGatingMiddleware:
    def _with_token(self, client: TestClient, token: str) -> TestClient:
        client.cookies.set("access_token", token)
        return client

    def test_anonymous_dashboard_redirects(self, client):
        resp = client.get("/dashboard")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/login"
        assert parse_qs(location.query)["from"] == ["/dashboard"]

    def test_user_on_admin_redirects_to_dashboard(self, client, make_user):
        user = make_user()
        self._with_token(client, create_access_token(user.id, user.username, Role.USER.value))
        resp = client.get("/admin")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/dashboard?error=")

    def test_admin_passes_admin_gate(self, client, make_user):
        admin = make_user(role=Role.ADMIN)
        self._with_token(client, create_access_token(admin.id, admin.username, Role.ADMIN.value))
        resp = client.get("/admin")
        assert resp.status_code == 404

    def test_signed_in_user_bounced_from_login(self, client, make_user):
        user = make_user()
        self._with_token(client, create_access_token(user.id, user.username, Role.USER.value))
        resp = client.get("/login")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"

    def test_expired_token_is_anonymous(self, client):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        expired = jwt.encode(
            {"user_id": 1, "role": "ADMIN", "type": "access", "exp": past},
            get_settings().jwt_access_secret,
            algorithm="HS256",
        )
        self._with_token(client, expired)
        resp = client.get("/admin")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/login")

    def test_refresh_token_in_access_cookie_is_anonymous(self, client):
        self._with_token(client, create_refresh_token(1, "x", "SUPER_ADMIN"))
        resp = client.get("/admin")
        assert resp.headers["location"].startswith("/login")

    def test_api_routes_are_not_redirected(self, client):
        resp = client.get("/api/auth/me")
        assert resp.status_code == 401
