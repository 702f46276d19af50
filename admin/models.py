"""
admin/models.py -- Domain dataclasses for the admin console.

Layer rule: may import auth.models (for Role); nothing from api/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any

from auth.models import Role


@dataclass
class Invite:
    """A pending invitation. Valid only while used_at is None and not expired."""

    email: str
    token: str
    expires_at: str
    role: Role = Role.USER
    created_by: int | None = None
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None


@dataclass
class ActivityLog:
    action: str
    user_id: int | None = None
    resource: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuthSettings:
    """Admin-configurable authentication switches, stored under "auth_settings".

    The OAuth and email-verification switches are persisted and reported but
    have no effect here: neither feature is served by this application.
    """

    allow_password_auth: bool = True
    allow_google_oauth: bool = False
    allow_github_oauth: bool = False
    require_username: bool = True
    require_email: bool = True
    email_verification_required: bool = False
    two_factor_required: bool = False
    allow_self_registration: bool = True

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)
