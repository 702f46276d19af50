"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two auth methods are checked in priority order:
  1. JWT cookie ("access_token") -- set by the login flow.
  2. Authorization: Bearer <token> header -- API clients using JWTs.

Both converge on a User loaded fresh from the store, so role checks use the
user's current role rather than the (possibly stale) role claim.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises UnauthorizedError (401).
require_roles() wraps get_current_user() and raises ForbiddenError (403).

Layer rule: no imports from api/ or admin/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import Role, User
from auth.tokens import ACCESS_COOKIE, TokenError, decode_access_token
from core.errors import ForbiddenError, UnauthorizedError


def get_request_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_user(request: Request) -> User | None:
    """Attempt to authenticate the request via cookie or Bearer header.

    Returns the authenticated User on success, None on any failure.
    Never raises -- callers that need a hard 401 should use get_current_user().
    """
    token = get_request_token(request)
    if not token:
        return None
    try:
        payload = decode_access_token(token)
    except TokenError:
        return None
    return request.app.state.user_store.get_by_id(payload["user_id"])


def get_current_user(request: Request) -> User:
    """Require authentication. Raises 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise UnauthorizedError()
    return user


def require_roles(*roles: Role):
    """Build a dependency that admits only the given roles (403 otherwise)."""
    allowed = frozenset(roles)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if user.role not in allowed:
            raise ForbiddenError("Insufficient permissions.")
        return user

    return dependency


require_admin = require_roles(Role.ADMIN, Role.SUPER_ADMIN)
require_super_admin = require_roles(Role.SUPER_ADMIN)
