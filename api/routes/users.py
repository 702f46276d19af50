"""
api/routes/users.py -- Self-service account endpoints.

Routes (all require auth):
  GET   /api/users/me                    -- profile
  PATCH /api/users/me                    -- update username/email (409 if taken)
  PATCH /api/users/me/password           -- change password; signs out other devices
  POST  /api/users/me/2fa/setup          -- start enrolment (pending secret + QR)
  POST  /api/users/me/2fa/enable         -- confirm with a TOTP code; returns backup codes
  POST  /api/users/me/2fa/disable        -- password-confirmed switch-off
  POST  /api/users/me/2fa/backup-codes   -- password-confirmed backup code regeneration
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from admin.activity import ActivityAction, log_activity
from api.models import PasswordChange, PasswordConfirm, ProfileUpdate, TwoFactorEnableRequest, UserResponse
from api.responses import no_store, ok
from auth import two_factor
from auth.dependencies import get_current_user
from auth.models import User
from auth.passwords import hash_password, verify_password
from auth.sessions import revoke_all_sessions
from auth.store import UserStore
from auth.tokens import REFRESH_COOKIE
from core.errors import ConflictError, UnauthorizedError

router = APIRouter(prefix="/users/me")

_BACKUP_CODES_WARNING = "Save these backup codes in a safe place. They will not be shown again."


def check_identity_available(store: UserStore, user_id: int, username: str | None, email: str | None) -> None:
    """Raise ConflictError if another account already uses username or email."""
    if username is not None:
        other = store.get_by_username(username)
        if other is not None and other.id != user_id:
            raise ConflictError("Username already taken", code="username_taken")
    if email is not None:
        other = store.get_by_email(email)
        if other is not None and other.id != user_id:
            raise ConflictError("Email already registered", code="email_taken")


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@router.get("")
def get_profile(current_user: User = Depends(get_current_user)) -> JSONResponse:
    return ok({"user": UserResponse.from_user(current_user)})


@router.patch("")
def update_profile(
    request: Request, body: ProfileUpdate, current_user: User = Depends(get_current_user)
) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    changes = body.model_dump(exclude_none=True)
    if changes:
        check_identity_available(store, current_user.id, body.username, body.email)
        try:
            store.update_user(current_user.id, **changes)
        except IntegrityError:
            raise ConflictError("Username or email already registered", code="user_exists") from None
        log_activity(
            request,
            ActivityAction.PROFILE_UPDATE,
            user_id=current_user.id,
            resource="user",
            resource_id=current_user.id,
            details={"fields": sorted(changes)},
        )
    return ok({"user": UserResponse.from_user(store.get_by_id(current_user.id))}, message="Profile updated")


@router.patch("/password")
def change_password(
    request: Request, body: PasswordChange, current_user: User = Depends(get_current_user)
) -> JSONResponse:
    """Change the password and revoke every other refresh token of this user.

    The caller's own refresh token survives so this device stays signed in.
    """
    store: UserStore = request.app.state.user_store
    if not current_user.hashed_password or not verify_password(body.current_password, current_user.hashed_password):
        raise UnauthorizedError("Current password is incorrect", code="invalid_password")
    store.update_user(current_user.id, hashed_password=hash_password(body.new_password))
    revoke_all_sessions(store, current_user.id, keep_refresh_token=request.cookies.get(REFRESH_COOKIE))
    log_activity(request, ActivityAction.PASSWORD_CHANGE, user_id=current_user.id, resource="user")
    return ok(message="Password changed successfully")


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


@router.post("/2fa/setup")
def setup_two_factor(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    data = two_factor.begin_setup(request.app.state.user_store, current_user)
    return no_store(ok(data, message="Scan the QR code with your authenticator app"))


@router.post("/2fa/enable")
def enable_two_factor(
    request: Request, body: TwoFactorEnableRequest, current_user: User = Depends(get_current_user)
) -> JSONResponse:
    codes = two_factor.enable(request.app.state.user_store, current_user, body.token)
    log_activity(request, ActivityAction.ENABLE_2FA, user_id=current_user.id, resource="user")
    return no_store(
        ok({"backupCodes": codes, "warning": _BACKUP_CODES_WARNING}, message="Two-factor authentication enabled")
    )


@router.post("/2fa/disable")
def disable_two_factor(
    request: Request, body: PasswordConfirm, current_user: User = Depends(get_current_user)
) -> JSONResponse:
    two_factor.disable(request.app.state.user_store, current_user, body.password)
    log_activity(request, ActivityAction.DISABLE_2FA, user_id=current_user.id, resource="user")
    return ok(message="Two-factor authentication disabled")


@router.post("/2fa/backup-codes")
def regenerate_backup_codes(
    request: Request, body: PasswordConfirm, current_user: User = Depends(get_current_user)
) -> JSONResponse:
    codes = two_factor.regenerate_backup_codes(request.app.state.user_store, current_user, body.password)
    log_activity(request, ActivityAction.BACKUP_CODES_REGENERATE, user_id=current_user.id, resource="user")
    return no_store(ok({"backupCodes": codes, "warning": _BACKUP_CODES_WARNING}, message="Backup codes regenerated"))
