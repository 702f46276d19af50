"""
api/routes/admin.py -- Admin console REST endpoints.

Routes:
  GET    /api/admin/stats           -- dashboard counters              (ADMIN+)
  GET    /api/admin/users           -- paginated, searchable list      (ADMIN+)
  GET    /api/admin/users/export    -- CSV download                    (ADMIN+)
  GET    /api/admin/users/{id}      -- one user                        (ADMIN+)
  PATCH  /api/admin/users/{id}      -- edit user                       (ADMIN+)
  DELETE /api/admin/users/{id}      -- delete user                     (SUPER_ADMIN)
  GET    /api/admin/invites         -- list invites                    (ADMIN+)
  POST   /api/admin/invites         -- create invite                   (ADMIN+)
  DELETE /api/admin/invites/{id}    -- revoke invite                   (ADMIN+)
  GET    /api/admin/settings        -- auth settings                   (ADMIN+)
  PATCH  /api/admin/settings        -- partial settings update         (ADMIN+)
  GET    /api/admin/logs            -- filtered audit log              (SUPER_ADMIN)
  DELETE /api/admin/logs            -- delete all / older than N days  (SUPER_ADMIN)

Privilege rules:
  An ADMIN may edit USER accounts only and may never change a role.
  Only a SUPER_ADMIN may invite a SUPER_ADMIN.
  Nobody may delete their own account or change their own role here, so the
  console cannot lock out its last super admin.
"""

from __future__ import annotations

import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import IntegrityError

from admin.activity import ActivityAction, log_activity
from admin.export import users_to_csv
from admin.models import Invite
from admin.settings import get_auth_settings, update_auth_settings
from admin.store import AdminStore
from api.models import (
    ActivityLogResponse,
    AdminUserUpdate,
    AuthSettingsResponse,
    InviteCreate,
    InviteResponse,
    Pagination,
    SettingsUpdate,
    UserResponse,
)
from api.responses import ok
from api.routes.users import check_identity_available
from auth.dependencies import require_admin, require_super_admin
from auth.models import Role, User
from auth.store import UserStore, to_iso
from core.config import get_settings
from core.errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError

logger = logging.getLogger("gatekeeper.api.admin")

router = APIRouter(prefix="/admin")


def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, total_pages=math.ceil(total / limit) if total else 0)


def _get_user_or_404(store: UserStore, user_id: int) -> User:
    user = store.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found", code="user_not_found")
    return user


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


@router.get("/stats")
def stats(request: Request, current_user: User = Depends(require_admin)) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    admin_store: AdminStore = request.app.state.admin_store
    now = datetime.now(timezone.utc)
    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return ok(
        {
            "totalUsers": store.count_users(),
            "usersToday": store.count_users_created_since(to_iso(start_of_today)),
            "usersThisWeek": store.count_users_created_since(to_iso(now - timedelta(days=7))),
            "usersThisMonth": store.count_users_created_since(to_iso(now - timedelta(days=30))),
            "roleCounts": store.count_by_role(),
            "twoFactorEnabled": store.count_two_factor_enabled(),
            "pendingInvites": admin_store.count_pending_invites(),
            "recentUsers": [UserResponse.from_user(u) for u in store.recent_users(5)],
        }
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users")
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    search: Optional[str] = Query(default=None, max_length=255),
    role: Optional[Role] = None,
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    search = search.strip() if search else None
    total = store.count_users(search=search, role=role)
    users = store.list_users(search=search, role=role, offset=(page - 1) * limit, limit=limit)
    return ok(
        {
            "users": [UserResponse.from_user(u) for u in users],
            "pagination": _pagination(page, limit, total),
        }
    )


@router.get("/users/export")
def export_users(
    request: Request,
    search: Optional[str] = Query(default=None, max_length=255),
    role: Optional[Role] = None,
    current_user: User = Depends(require_admin),
) -> Response:
    """Download the (optionally filtered) user list as CSV."""
    users = request.app.state.user_store.list_users(search=search.strip() if search else None, role=role)
    log_activity(
        request, ActivityAction.USER_EXPORT, user_id=current_user.id, resource="user", details={"count": len(users)}
    )
    filename = f"users-{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.csv"
    return Response(
        content=users_to_csv(users),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"', "Cache-Control": "no-store"},
    )


@router.get("/users/{user_id}")
def get_user(request: Request, user_id: int, current_user: User = Depends(require_admin)) -> JSONResponse:
    return ok({"user": UserResponse.from_user(_get_user_or_404(request.app.state.user_store, user_id))})


@router.patch("/users/{user_id}")
def update_user(
    request: Request, user_id: int, body: AdminUserUpdate, current_user: User = Depends(require_admin)
) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    target = _get_user_or_404(store, user_id)
    changes = body.model_dump(exclude_none=True)

    if current_user.role == Role.ADMIN:
        if target.role != Role.USER and target.id != current_user.id:
            raise ForbiddenError("Admins can only modify regular users.")
        if "role" in changes and changes["role"] != target.role:
            raise ForbiddenError("Only super admins can change user roles.")
    if target.id == current_user.id and "role" in changes and changes["role"] != target.role:
        raise BadRequestError("You cannot change your own role.", code="self_role_change")

    if changes:
        check_identity_available(store, target.id, body.username, body.email)
        try:
            store.update_user(target.id, **changes)
        except IntegrityError:
            raise ConflictError("Username or email already registered", code="user_exists") from None
        log_activity(
            request,
            ActivityAction.USER_UPDATE,
            user_id=current_user.id,
            resource="user",
            resource_id=target.id,
            details={k: (v.value if isinstance(v, Role) else v) for k, v in changes.items()},
        )
    return ok({"user": UserResponse.from_user(store.get_by_id(target.id))}, message="User updated")


@router.delete("/users/{user_id}")
def delete_user(request: Request, user_id: int, current_user: User = Depends(require_super_admin)) -> JSONResponse:
    store: UserStore = request.app.state.user_store
    if user_id == current_user.id:
        raise BadRequestError("You cannot delete your own account.", code="self_delete")
    target = _get_user_or_404(store, user_id)
    store.delete_user(target.id)
    log_activity(
        request,
        ActivityAction.USER_DELETE,
        user_id=current_user.id,
        resource="user",
        resource_id=target.id,
        details={"username": target.username, "email": target.email},
    )
    logger.info("User %s deleted by user_id=%s", target.id, current_user.id)
    return ok(message="User deleted")


# ---------------------------------------------------------------------------
# Invites
# ---------------------------------------------------------------------------


@router.get("/invites")
def list_invites(
    request: Request,
    include_used: bool = Query(default=False, alias="includeUsed"),
    include_expired: bool = Query(default=False, alias="includeExpired"),
    current_user: User = Depends(require_admin),
) -> JSONResponse:
    invites = request.app.state.admin_store.list_invites(include_used=include_used, include_expired=include_expired)
    return ok({"invites": [InviteResponse.from_invite(i) for i in invites]})


@router.post("/invites", status_code=201)
def create_invite(request: Request, body: InviteCreate, current_user: User = Depends(require_admin)) -> JSONResponse:
    admin_store: AdminStore = request.app.state.admin_store
    if body.role == Role.SUPER_ADMIN and current_user.role != Role.SUPER_ADMIN:
        raise ForbiddenError("Only super admins can invite super admins.")
    if request.app.state.user_store.get_by_email(body.email) is not None:
        raise ConflictError("A user with this email already exists", code="email_taken")
    if admin_store.get_pending_invite_by_email(body.email) is not None:
        raise ConflictError("A pending invite already exists for this email", code="invite_exists")

    expires_at = datetime.now(timezone.utc) + timedelta(days=get_settings().invite_expire_days)
    invite_id = admin_store.create_invite(
        Invite(
            email=body.email,
            role=body.role,
            token=secrets.token_urlsafe(32),
            created_by=current_user.id,
            expires_at=to_iso(expires_at),
        )
    )
    invite = admin_store.get_invite(invite_id)
    log_activity(
        request,
        ActivityAction.INVITE_CREATE,
        user_id=current_user.id,
        resource="invite",
        resource_id=invite_id,
        details={"email": body.email, "role": body.role.value},
    )
    invite_url = f"{get_settings().app_url.rstrip('/')}/register?invite={invite.token}"
    return ok({"invite": InviteResponse.from_invite(invite), "inviteUrl": invite_url}, status_code=201)


@router.delete("/invites/{invite_id}")
def delete_invite(request: Request, invite_id: int, current_user: User = Depends(require_admin)) -> JSONResponse:
    if not request.app.state.admin_store.delete_invite(invite_id):
        raise NotFoundError("Invite not found", code="invite_not_found")
    log_activity(request, ActivityAction.INVITE_DELETE, user_id=current_user.id, resource="invite", resource_id=invite_id)
    return ok(message="Invite deleted")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@router.get("/settings")
def read_settings(request: Request, current_user: User = Depends(require_admin)) -> JSONResponse:
    return ok({"settings": AuthSettingsResponse.from_settings(get_auth_settings(request.app.state.admin_store))})


@router.patch("/settings")
def patch_settings(request: Request, body: SettingsUpdate, current_user: User = Depends(require_admin)) -> JSONResponse:
    changes = body.model_dump(exclude_none=True)
    updated = update_auth_settings(request.app.state.admin_store, changes, updated_by=current_user.id)
    log_activity(request, ActivityAction.SETTINGS_UPDATE, user_id=current_user.id, resource="settings", details=changes)
    return ok({"settings": AuthSettingsResponse.from_settings(updated)}, message="Settings updated")


# ---------------------------------------------------------------------------
# Activity logs
# ---------------------------------------------------------------------------


def _parse_date(value: Optional[str], name: str, end_of_day: bool = False) -> Optional[str]:
    """Parse an ISO date or datetime query value into a stored-format timestamp.

    A bare date used as an upper bound covers that whole day.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise BadRequestError(f"Invalid {name}; expected an ISO 8601 date.", code="invalid_date") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if end_of_day and len(value) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(microseconds=1)
    return to_iso(parsed)


@router.get("/logs")
def list_logs(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: Optional[int] = Query(default=None, alias="userId"),
    action: Optional[str] = Query(default=None, max_length=50),
    resource: Optional[str] = Query(default=None, max_length=50),
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    current_user: User = Depends(require_super_admin),
) -> JSONResponse:
    admin_store: AdminStore = request.app.state.admin_store
    filters = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "start": _parse_date(start_date, "startDate"),
        "end": _parse_date(end_date, "endDate", end_of_day=True),
    }
    total = admin_store.count_logs(**filters)
    logs = admin_store.list_logs(**filters, offset=(page - 1) * limit, limit=limit)
    users = request.app.state.user_store.get_usernames({log.user_id for log in logs if log.user_id is not None})
    return ok(
        {
            "logs": [ActivityLogResponse.from_log(log, users.get(log.user_id)) for log in logs],
            "pagination": _pagination(page, limit, total),
        }
    )


@router.delete("/logs")
def delete_logs(
    request: Request,
    delete_all: bool = Query(default=False, alias="all"),
    older_than: Optional[int] = Query(default=None, alias="olderThan", ge=1),
    current_user: User = Depends(require_super_admin),
) -> JSONResponse:
    """Delete every log (all=true) or logs older than olderThan days."""
    admin_store: AdminStore = request.app.state.admin_store
    if delete_all:
        deleted = admin_store.delete_all_logs()
    elif older_than is not None:
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than)
        deleted = admin_store.delete_logs_older_than(to_iso(cutoff))
    else:
        raise BadRequestError("Specify all=true or olderThan=<days>.", code="missing_filter")
    log_activity(
        request,
        ActivityAction.LOGS_DELETE,
        user_id=current_user.id,
        resource="logs",
        details={"all": delete_all, "olderThan": older_than, "deleted": deleted},
    )
    return ok({"deleted": deleted}, message=f"Deleted {deleted} log entries")
