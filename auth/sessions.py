"""
auth/sessions.py -- Session lifecycle: issue, rotate, destroy, revoke.

A session is an access/refresh JWT pair held in httpOnly cookies, backed by
one refresh_tokens row. Rotation is single-use: refresh_session() consumes
the presented token's row and writes its replacement in one transaction, so
a replayed refresh token finds no row and is rejected.

The role embedded in rotated tokens is the user's role at rotation time, not
the role in the presented token -- a demotion takes effect on the next
refresh at the latest.

Layer rule: no imports from api/ or admin/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from auth.models import RefreshToken, User
from auth.store import UserStore, to_iso
from auth.tokens import (
    TokenError,
    clear_auth_cookies,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    hash_refresh_token,
    refresh_expires_at,
    set_auth_cookies,
)
from core.errors import UnauthorizedError

logger = logging.getLogger("gatekeeper.auth.sessions")


def _issue_pair(user: User) -> tuple[str, str, RefreshToken]:
    role = user.role.value
    access = create_access_token(user.id, user.username, role)
    refresh = create_refresh_token(user.id, user.username, role)
    row = RefreshToken(
        user_id=user.id,
        token_hash=hash_refresh_token(refresh),
        expires_at=to_iso(refresh_expires_at()),
    )
    return access, refresh, row


def create_session(store: UserStore, response, user: User) -> tuple[str, str]:
    """Issue a fresh token pair, persist the refresh hash and set both cookies.

    Also stamps the user's last_login. Returns (access_token, refresh_token).
    """
    access, refresh, row = _issue_pair(user)
    store.create_refresh_token(row)
    store.update_last_login(user.id)
    set_auth_cookies(response, access, refresh)
    logger.info("Session created for user_id=%s", user.id)
    return access, refresh


def refresh_session(store: UserStore, refresh_token: str | None) -> tuple[User, str, str]:
    """Rotate a refresh token.

    Returns (user, new_access_token, new_refresh_token). Raises
    UnauthorizedError when the token is missing, invalid, expired, already
    used, or belongs to a user that no longer exists.
    """
    if not refresh_token:
        raise UnauthorizedError("Refresh token not found", code="refresh_token_missing")
    try:
        payload = decode_refresh_token(refresh_token)
    except TokenError:
        raise UnauthorizedError("Invalid or expired refresh token", code="invalid_refresh_token") from None

    stored = store.get_refresh_token(hash_refresh_token(refresh_token))
    if stored is None:
        logger.warning("Refresh token reuse or revoked token for user_id=%s", payload["user_id"])
        raise UnauthorizedError("Refresh token has been revoked", code="invalid_refresh_token")

    if datetime.now(timezone.utc) > datetime.fromisoformat(stored.expires_at):
        store.delete_refresh_token_by_id(stored.id)
        raise UnauthorizedError("Refresh token expired", code="invalid_refresh_token")

    user = store.get_by_id(stored.user_id)
    if user is None:
        store.delete_refresh_token_by_id(stored.id)
        raise UnauthorizedError("User not found", code="invalid_refresh_token")

    access, refresh, row = _issue_pair(user)
    if store.rotate_refresh_token(stored.id, row) is None:
        # Lost a race with a concurrent rotation of the same token.
        raise UnauthorizedError("Refresh token has been revoked", code="invalid_refresh_token")
    return user, access, refresh


def destroy_session(store: UserStore, response, refresh_token: str | None) -> None:
    """Forget the stored refresh token (if any) and clear both cookies."""
    if refresh_token:
        store.delete_refresh_token(hash_refresh_token(refresh_token))
    clear_auth_cookies(response)


def revoke_all_sessions(store: UserStore, user_id: int, keep_refresh_token: str | None = None) -> int:
    """Delete every refresh token of a user, optionally sparing the caller's own."""
    keep_hash = hash_refresh_token(keep_refresh_token) if keep_refresh_token else None
    count = store.delete_refresh_tokens_for_user(user_id, keep_hash=keep_hash)
    logger.info("Revoked %d session(s) for user_id=%s", count, user_id)
    return count
