"""
admin/activity.py -- Audit trail helpers.

log_activity() is called from route handlers after the action succeeds. An
audit write failure is logged with its traceback and never propagates: the
user's request already did its work and must not turn into a 500 because
the audit table is locked.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError

from admin.models import ActivityLog

logger = logging.getLogger("gatekeeper.admin.activity")


class ActivityAction:
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_2FA = "LOGIN_2FA"
    FAILED_2FA = "FAILED_2FA"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    ENABLE_2FA = "ENABLE_2FA"
    DISABLE_2FA = "DISABLE_2FA"
    BACKUP_CODES_REGENERATE = "BACKUP_CODES_REGENERATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_EXPORT = "USER_EXPORT"
    INVITE_CREATE = "INVITE_CREATE"
    INVITE_DELETE = "INVITE_DELETE"
    INVITE_USE = "INVITE_USE"
    SETTINGS_UPDATE = "SETTINGS_UPDATE"
    LOGS_DELETE = "LOGS_DELETE"


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def log_activity(
    request: Request,
    action: str,
    user_id: int | None = None,
    resource: str | None = None,
    resource_id: Any = None,
    details: dict[str, Any] | None = None,
) -> None:
    entry = ActivityLog(
        action=action,
        user_id=user_id,
        resource=resource,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )
    try:
        request.app.state.admin_store.create_log(entry)
    except SQLAlchemyError:
        logger.exception("Failed to write activity log action=%s user_id=%s", action, user_id)
