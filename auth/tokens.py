"""
auth/tokens.py -- JWT issuance, verification, refresh token hashing and cookies.

Security design decisions:
  JWT: python-jose with HS256. Three token types, distinguished by the "type"
       claim and checked on every decode:
         access      -- access secret, short-lived (JWT_ACCESS_EXPIRY).
         refresh     -- refresh secret, long-lived (JWT_REFRESH_EXPIRY); carries
                        a random "jti" so two tokens minted in the same second
                        for the same user are still distinct.
         two_factor  -- access secret, a few minutes (TWO_FACTOR_PENDING_EXPIRY);
                        the partial session between password and second factor.
       Decoding raises TokenError on any failure. The dependency layer turns
       that into 401.

  Separate secrets [M7]: a refresh token cannot verify as an access token even
       if the type check were bypassed.

  Refresh storage: only HMAC-SHA256(refresh secret, jwt) is persisted, so a
       database leak does not leak usable tokens. The hash is deterministic,
       enabling O(1) lookup through a UNIQUE index.

  Cookies: httponly, samesite=lax, path=/, secure when SECURE_COOKIES=true.
       Cookie max_age matches the JWT lifetime so both expire together.

Layer rule: no imports from api/ or admin/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
TWO_FACTOR_COOKIE = "two_factor_token"

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_TWO_FACTOR = "two_factor"


class TokenError(Exception):
    """Raised when a token is malformed, expired, forged or of the wrong type."""


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def _encode(claims: dict, secret: str, lifetime_seconds: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {**claims, "iat": now, "exp": now + timedelta(seconds=lifetime_seconds)}
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def create_access_token(user_id: int, username: str, role: str) -> str:
    settings = get_settings()
    claims = {"sub": username, "user_id": user_id, "role": role, "type": TOKEN_TYPE_ACCESS}
    return _encode(claims, settings.jwt_access_secret, settings.access_expire_seconds)


def create_refresh_token(user_id: int, username: str, role: str) -> str:
    settings = get_settings()
    claims = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "type": TOKEN_TYPE_REFRESH,
        "jti": secrets.token_hex(16),
    }
    return _encode(claims, settings.jwt_refresh_secret, settings.refresh_expire_seconds)


def create_two_factor_token(user_id: int) -> str:
    """Mint the partial-session token issued after a correct password for a 2FA account."""
    settings = get_settings()
    claims = {"user_id": user_id, "type": TOKEN_TYPE_TWO_FACTOR}
    return _encode(claims, settings.jwt_access_secret, settings.two_factor_pending_seconds)


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def _decode(token: str, secret: str, expected_type: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
    except JWTError as exc:
        raise TokenError(str(exc)) from exc
    if payload.get("type") != expected_type:
        raise TokenError(f"Expected a {expected_type} token")
    if not isinstance(payload.get("user_id"), int):
        raise TokenError("Token is missing user_id")
    return payload


def decode_access_token(token: str) -> dict:
    payload = _decode(token, get_settings().jwt_access_secret, TOKEN_TYPE_ACCESS)
    if "role" not in payload:
        raise TokenError("Token is missing role")
    return payload


def decode_refresh_token(token: str) -> dict:
    return _decode(token, get_settings().jwt_refresh_secret, TOKEN_TYPE_REFRESH)


def decode_two_factor_token(token: str) -> dict:
    return _decode(token, get_settings().jwt_access_secret, TOKEN_TYPE_TWO_FACTOR)


def hash_refresh_token(token: str) -> str:
    """Return HMAC-SHA256(refresh secret, token) as a hex string."""
    return hmac.new(
        get_settings().jwt_refresh_secret.encode(),
        token.encode(),
        hashlib.sha256,
    ).hexdigest()


def refresh_expires_at() -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=get_settings().refresh_expire_seconds)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _set_cookie(response, name: str, value: str, max_age: int) -> None:
    settings = get_settings()
    response.set_cookie(
        name,
        value=value,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=max_age,
        path="/",
        domain=settings.cookie_domain,
    )


def _clear_cookie(response, name: str) -> None:
    settings = get_settings()
    response.delete_cookie(
        name,
        path="/",
        domain=settings.cookie_domain,
        secure=settings.secure_cookies,
        httponly=True,
        samesite="lax",
    )


def set_auth_cookies(response, access_token: str, refresh_token: str) -> None:
    """Write both session cookies on the response."""
    settings = get_settings()
    _set_cookie(response, ACCESS_COOKIE, access_token, settings.access_expire_seconds)
    _set_cookie(response, REFRESH_COOKIE, refresh_token, settings.refresh_expire_seconds)


def clear_auth_cookies(response) -> None:
    _clear_cookie(response, ACCESS_COOKIE)
    _clear_cookie(response, REFRESH_COOKIE)


def set_two_factor_cookie(response, token: str) -> None:
    _set_cookie(response, TWO_FACTOR_COOKIE, token, get_settings().two_factor_pending_seconds)


def clear_two_factor_cookie(response) -> None:
    _clear_cookie(response, TWO_FACTOR_COOKIE)
