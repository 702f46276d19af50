"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/auth/login       -- password login; full session, or a partial
                                 session when the account has 2FA
  POST /api/auth/register    -- create an account (optionally via invite); auto-login
  POST /api/auth/refresh     -- rotate the refresh token; new cookie pair
  POST /api/auth/logout      -- revoke the refresh token; clear cookies
  POST /api/auth/verify-2fa  -- exchange partial session + TOTP/backup code for a session
  GET  /api/auth/me          -- current user (requires auth)

Security:
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that sets credentials.
  The 2FA step trusts only the signed two_factor_token cookie for the user's
  identity; the request body carries nothing but the code.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from admin.activity import ActivityAction, log_activity
from admin.settings import get_auth_settings
from admin.store import AdminStore
from api.models import LoginRequest, RegisterRequest, UserResponse, VerifyTwoFactorRequest
from api.responses import app_error_response, no_store, ok
from auth.dependencies import get_current_user
from auth.gating import home_path, safe_next
from auth.models import Role, User
from auth.passwords import authenticate_user, hash_password
from auth.sessions import create_session, destroy_session, refresh_session
from auth.store import UserStore
from auth.tokens import (
    REFRESH_COOKIE,
    TWO_FACTOR_COOKIE,
    TokenError,
    clear_auth_cookies,
    clear_two_factor_cookie,
    create_two_factor_token,
    decode_two_factor_token,
    set_auth_cookies,
    set_two_factor_cookie,
)
from auth.two_factor import verify_second_factor
from core.config import get_settings
from core.errors import BadRequestError, ConflictError, ForbiddenError, UnauthorizedError

logger = logging.getLogger("gatekeeper.api.auth")

# Auth policy:
# - POST /api/auth/login, /register, /refresh, /logout, /verify-2fa: public
#   (refresh and verify-2fa authenticate through their own cookies)
# - GET  /api/auth/me: requires auth (get_current_user)
router = APIRouter(prefix="/auth")


def _redirect_target(user: User, from_path: str | None) -> str:
    """Where the client should go after sign-in; off-site targets fall back to home."""
    return safe_next(from_path, home_path(user.role, get_settings().admin_base_path))


# ---------------------------------------------------------------------------
# Login / register
# ---------------------------------------------------------------------------


@router.post("/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email-or-username and password.

    Accounts without 2FA get both session cookies. Accounts with 2FA get only
    the short-lived two_factor_token cookie and requiresTwoFactor=true; the
    client then calls /verify-2fa.
    A successful sign-in returns redirectTo: the optional "from" page when it
    is a relative path, otherwise the user's home page.

    The same generic error covers unknown accounts and wrong passwords.
    """
    user_store: UserStore = request.app.state.user_store
    admin_store: AdminStore = request.app.state.admin_store
    settings = get_auth_settings(admin_store)
    if not settings.allow_password_auth:
        raise ForbiddenError("Password login is disabled.", code="password_auth_disabled")

    user = authenticate_user(user_store, body.email_or_username, body.password)
    if user is None:
        log_activity(
            request,
            ActivityAction.LOGIN_FAILED,
            resource="auth",
            details={"identifier": body.email_or_username.strip().lower()},
        )
        raise UnauthorizedError("Invalid credentials.", code="invalid_credentials")

    if user.two_factor_enabled:
        resp = ok({"requiresTwoFactor": True}, message="Two-factor verification required")
        set_two_factor_cookie(resp, create_two_factor_token(user.id))
        return no_store(resp)

    resp = ok(
        {
            "user": UserResponse.from_user(user),
            "requiresTwoFactor": False,
            "twoFactorSetupRequired": settings.two_factor_required,
            "redirectTo": _redirect_target(user, body.from_path),
        },
        message="Login successful",
    )
    create_session(user_store, resp, user)
    log_activity(request, ActivityAction.LOGIN, user_id=user.id, resource="auth", details={"method": "password"})
    return no_store(resp)


def _consume_invite(admin_store: AdminStore, token: str, email: str):
    invite = admin_store.get_invite_by_token(token)
    if (
        invite is None
        or invite.used_at is not None
        or datetime.now(timezone.utc) > datetime.fromisoformat(invite.expires_at)
        or invite.email != email
    ):
        raise BadRequestError("Invalid or expired invite.", code="invalid_invite")
    return invite


@router.post("/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and sign it in.

    With an inviteToken the account gets the invite's role and the invite is
    consumed; the invite's email must match. Without one, registration must
    be open (allowSelfRegistration).
    """
    user_store: UserStore = request.app.state.user_store
    admin_store: AdminStore = request.app.state.admin_store
    settings = get_auth_settings(admin_store)

    invite = None
    role = Role.USER
    if body.invite_token:
        invite = _consume_invite(admin_store, body.invite_token, body.email)
        role = invite.role
    elif not settings.allow_self_registration:
        raise ForbiddenError("Registration is by invitation only.", code="registration_closed")

    if user_store.get_by_username(body.username) is not None:
        raise ConflictError("Username already taken", code="username_taken")
    if user_store.get_by_email(body.email) is not None:
        raise ConflictError("Email already registered", code="email_taken")

    try:
        user_id = user_store.create_user(
            User(username=body.username, email=body.email, role=role, hashed_password=hash_password(body.password))
        )
    except IntegrityError:
        # Concurrent registration for the same username/email won the race.
        raise ConflictError("Username or email already registered", code="user_exists") from None

    if invite is not None:
        admin_store.mark_invite_used(invite.id)
        log_activity(request, ActivityAction.INVITE_USE, user_id=user_id, resource="invite", resource_id=invite.id)

    user = user_store.get_by_id(user_id)
    resp = ok({"user": UserResponse.from_user(user)}, status_code=201, message="Registration successful")
    create_session(user_store, resp, user)
    log_activity(request, ActivityAction.REGISTER, user_id=user_id, resource="user", resource_id=user_id)
    logger.info("User registered: user_id=%s role=%s", user_id, role.value)
    return no_store(resp)


# ---------------------------------------------------------------------------
# Session maintenance
# ---------------------------------------------------------------------------


@router.post("/refresh")
def refresh(request: Request) -> JSONResponse:
    """Rotate the refresh token cookie and issue a new access token.

    On failure both session cookies are cleared so the client stops
    presenting a dead token.
    """
    user_store: UserStore = request.app.state.user_store
    try:
        user, access, refresh_token = refresh_session(user_store, request.cookies.get(REFRESH_COOKIE))
    except UnauthorizedError as exc:
        resp = app_error_response(exc)
        clear_auth_cookies(resp)
        return resp

    resp = ok({"user": UserResponse.from_user(user)}, message="Token refreshed")
    set_auth_cookies(resp, access, refresh_token)
    log_activity(request, ActivityAction.TOKEN_REFRESH, user_id=user.id, resource="auth")
    return no_store(resp)


@router.post("/logout")
def logout(request: Request) -> JSONResponse:
    """Revoke the presented refresh token and clear cookies. Idempotent."""
    user_store: UserStore = request.app.state.user_store
    user = None
    try:
        user = get_current_user(request)
    except UnauthorizedError:
        pass
    resp = ok(message="Logout successful")
    destroy_session(user_store, resp, request.cookies.get(REFRESH_COOKIE))
    clear_two_factor_cookie(resp)
    if user is not None:
        log_activity(request, ActivityAction.LOGOUT, user_id=user.id, resource="auth")
    return no_store(resp)


# ---------------------------------------------------------------------------
# Second factor
# ---------------------------------------------------------------------------


@router.post("/verify-2fa")
def verify_two_factor(request: Request, body: VerifyTwoFactorRequest) -> JSONResponse:
    """Complete a 2FA login.

    Identity comes from the two_factor_token cookie set by /login. A wrong code
    is 400 and the partial session stays valid until it expires.
    """
    user_store: UserStore = request.app.state.user_store
    token = request.cookies.get(TWO_FACTOR_COOKIE)
    if not token:
        raise UnauthorizedError("Two-factor session not found. Please log in again.", code="two_factor_session")
    try:
        payload = decode_two_factor_token(token)
    except TokenError:
        raise UnauthorizedError(
            "Two-factor session expired. Please log in again.", code="two_factor_session"
        ) from None

    user = user_store.get_by_id(payload["user_id"])
    if user is None or not user.two_factor_enabled:
        raise UnauthorizedError("Invalid request", code="two_factor_session")

    if not verify_second_factor(user_store, user, body.code, body.is_backup_code):
        log_activity(
            request,
            ActivityAction.FAILED_2FA,
            user_id=user.id,
            resource="auth",
            details={"reason": "Invalid backup code" if body.is_backup_code else "Invalid TOTP token"},
        )
        raise BadRequestError(
            "Invalid backup code. Please try again."
            if body.is_backup_code
            else "Invalid verification code. Please try again.",
            code="invalid_two_factor_code",
        )

    resp = ok(
        {"user": UserResponse.from_user(user), "redirectTo": _redirect_target(user, body.from_path)},
        message="Login successful",
    )
    create_session(user_store, resp, user)
    clear_two_factor_cookie(resp)
    log_activity(
        request,
        ActivityAction.LOGIN_2FA,
        user_id=user.id,
        resource="auth",
        details={"method": "backup_code" if body.is_backup_code else "totp"},
    )
    return no_store(resp)


@router.get("/me")
def me(current_user: User = Depends(get_current_user)) -> JSONResponse:
    return ok({"user": UserResponse.from_user(current_user)})
