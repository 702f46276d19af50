"""
tests/test_sessions.py -- Session lifecycle against a real UserStore.

Rotation must be single-use: once a refresh token has been exchanged, the
same token can never be exchanged again.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from starlette.responses import Response

from auth.models import RefreshToken, Role
from auth.sessions import create_session, destroy_session, refresh_session, revoke_all_sessions
from auth.store import to_iso
from auth.tokens import create_refresh_token, decode_access_token, hash_refresh_token
from core.errors import UnauthorizedError


def _set_cookie_headers(response: Response) -> list[str]:
    return [v.decode() for k, v in response.raw_headers if k.decode().lower() == "set-cookie"]


class TestCreateSession:
    def test_sets_both_cookies_and_persists_hash(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        response = Response()
        _, refresh = create_session(user_store, response, user)

        cookies = _set_cookie_headers(response)
        assert any(c.startswith("access_token=") and "HttpOnly" in c for c in cookies)
        assert any(c.startswith("refresh_token=") and "HttpOnly" in c for c in cookies)
        assert all("samesite=lax" in c.lower() for c in cookies)
        assert user_store.get_refresh_token(hash_refresh_token(refresh)) is not None
        assert user_store.get_by_id(user.id).last_login is not None

    def test_raw_token_is_not_stored(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        _, refresh = create_session(user_store, Response(), user)
        rows = user_store.list_refresh_tokens(user.id)
        assert rows and all(r.token_hash != refresh for r in rows)


class TestRefreshSession:
    def test_rotation_invalidates_previous_token(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        _, refresh = create_session(user_store, Response(), user)

        _, _, new_refresh = refresh_session(user_store, refresh)
        assert new_refresh != refresh

        with pytest.raises(UnauthorizedError):
            refresh_session(user_store, refresh)
        # The replacement still works exactly once.
        refresh_session(user_store, new_refresh)

    def test_rotated_tokens_carry_current_role(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        _, refresh = create_session(user_store, Response(), user)
        user_store.update_user(user.id, role=Role.ADMIN)

        _, access, _ = refresh_session(user_store, refresh)
        assert decode_access_token(access)["role"] == "ADMIN"

    def test_expired_row_is_deleted_and_rejected(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        token = create_refresh_token(user.id, user.username, user.role.value)
        user_store.create_refresh_token(
            RefreshToken(
                user_id=user.id,
                token_hash=hash_refresh_token(token),
                expires_at=to_iso(datetime.now(timezone.utc) - timedelta(seconds=1)),
            )
        )
        with pytest.raises(UnauthorizedError):
            refresh_session(user_store, token)
        assert user_store.get_refresh_token(hash_refresh_token(token)) is None

    def test_unknown_token_rejected(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        never_stored = create_refresh_token(user.id, user.username, user.role.value)
        with pytest.raises(UnauthorizedError):
            refresh_session(user_store, never_stored)

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    def test_missing_or_malformed_token_rejected(self, stores, token):
        user_store, _ = stores
        with pytest.raises(UnauthorizedError):
            refresh_session(user_store, token)


class TestRevocation:
    def test_destroy_session_forgets_token(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        _, refresh = create_session(user_store, Response(), user)
        response = Response()
        destroy_session(user_store, response, refresh)

        assert user_store.get_refresh_token(hash_refresh_token(refresh)) is None
        cookies = _set_cookie_headers(response)
        assert any(c.startswith("access_token=") and "Max-Age=0" in c for c in cookies)

    def test_revoke_all_keeps_current_session(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        _, keep = create_session(user_store, Response(), user)
        _, other = create_session(user_store, Response(), user)

        assert revoke_all_sessions(user_store, user.id, keep_refresh_token=keep) == 1
        assert user_store.get_refresh_token(hash_refresh_token(keep)) is not None
        assert user_store.get_refresh_token(hash_refresh_token(other)) is None

    def test_deleting_user_removes_tokens(self, stores, make_user):
        user_store, _ = stores
        user = make_user()
        create_session(user_store, Response(), user)
        user_store.delete_user(user.id)
        assert user_store.list_refresh_tokens(user.id) == []
