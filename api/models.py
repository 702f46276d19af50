"""
API request and response models for Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
admin/models.py, which own the internal domain representation. Route handlers
map between the two.

JSON field names are camelCase on the wire (emailOrUsername, confirmPassword,
twoFactorEnabled, ...). _CamelModel applies the alias generator; Python code
uses snake_case attribute names throughout.

Separation of concerns: auth/ and admin/ models = domain truth; api/ models =
API contract.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from admin.models import ActivityLog, AuthSettings, Invite
from auth.models import Role, User
from auth.passwords import validate_password_strength

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
TOTP_PATTERN = r"^\d{6}$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


def _check_password(value: str) -> str:
    message = validate_password_strength(value)
    if message is not None:
        raise ValueError(message)
    return value


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


class LoginRequest(_CamelModel):
    email_or_username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    # Page the user was sent away from (the "from" query of /login).
    from_path: Optional[str] = Field(default=None, alias="from", max_length=2048)


class RegisterRequest(_CamelModel):
    """Request body for POST /api/auth/register.

    username and email are lowercased before the pattern checks run, so
    "Alice" and "alice" cannot both register.
    """

    username: str = Field(min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(max_length=128)
    confirm_password: str = Field(max_length=128)
    invite_token: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username", "email", mode="before")
    @classmethod
    def lowercase(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return _check_password(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


class VerifyTwoFactorRequest(_CamelModel):
    code: str = Field(min_length=6, max_length=20)
    is_backup_code: bool = False
    from_path: Optional[str] = Field(default=None, alias="from", max_length=2048)


# ---------------------------------------------------------------------------
# Self-service requests
# ---------------------------------------------------------------------------


class ProfileUpdate(_CamelModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("username", "email", mode="before")
    @classmethod
    def lowercase(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class PasswordChange(_CamelModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(max_length=128)
    confirm_password: str = Field(max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_policy(cls, value: str) -> str:
        return _check_password(value)

    @model_validator(mode="after")
    def check_passwords(self) -> "PasswordChange":
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords do not match")
        if self.new_password == self.current_password:
            raise ValueError("New password must be different from current password")
        return self


class TwoFactorEnableRequest(_CamelModel):
    token: str = Field(pattern=TOTP_PATTERN)


class PasswordConfirm(_CamelModel):
    password: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Admin requests
# ---------------------------------------------------------------------------


class AdminUserUpdate(ProfileUpdate):
    role: Optional[Role] = None


class InviteCreate(_CamelModel):
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    role: Role = Role.USER

    @field_validator("email", mode="before")
    @classmethod
    def lowercase(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class SettingsUpdate(_CamelModel):
    """Partial update of AuthSettings. Unknown keys are rejected (422)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    allow_password_auth: Optional[bool] = None
    allow_google_oauth: Optional[bool] = None
    allow_github_oauth: Optional[bool] = None
    require_username: Optional[bool] = None
    require_email: Optional[bool] = None
    email_verification_required: Optional[bool] = None
    two_factor_required: Optional[bool] = None
    allow_self_registration: Optional[bool] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    id: int
    username: str
    email: str
    role: Role
    two_factor_enabled: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            two_factor_enabled=user.two_factor_enabled,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login=user.last_login,
        )


class InviteResponse(_CamelModel):
    id: int
    email: str
    role: Role
    token: str
    created_by: Optional[int] = None
    expires_at: str
    used_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_invite(cls, invite: Invite) -> "InviteResponse":
        return cls(
            id=invite.id,
            email=invite.email,
            role=invite.role,
            token=invite.token,
            created_by=invite.created_by,
            expires_at=invite.expires_at,
            used_at=invite.used_at,
            created_at=invite.created_at,
        )


class LogUser(_CamelModel):
    id: int
    username: str
    email: str
    role: Role


class ActivityLogResponse(_CamelModel):
    id: int
    user_id: Optional[int] = None
    user: Optional[LogUser] = None
    action: str
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_log(cls, log: ActivityLog, user: User | None) -> "ActivityLogResponse":
        return cls(
            id=log.id,
            user_id=log.user_id,
            user=LogUser(id=user.id, username=user.username, email=user.email, role=user.role) if user else None,
            action=log.action,
            resource=log.resource,
            resource_id=log.resource_id,
            details=log.details,
            ip_address=log.ip_address,
            user_agent=log.user_agent,
            created_at=log.created_at,
        )


class AuthSettingsResponse(_CamelModel):
    allow_password_auth: bool
    allow_google_oauth: bool
    allow_github_oauth: bool
    require_username: bool
    require_email: bool
    email_verification_required: bool
    two_factor_required: bool
    allow_self_registration: bool

    @classmethod
    def from_settings(cls, settings: AuthSettings) -> "AuthSettingsResponse":
        return cls(**settings.to_dict())


class Pagination(_CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ErrorDetail(BaseModel):
    """Structured error body returned by all error responses."""

    code: str
    message: str
    detail: Any = None


class ErrorResponse(BaseModel):
    """Top-level error envelope: {"success": false, "error": {...}}."""

    success: bool = False
    error: ErrorDetail


class HealthComponents(BaseModel):
    app: str = "ok"
    database: str = "ok"


class HealthResponse(BaseModel):
    """Response body for GET /api/health."""

    status: str = "healthy"
    version: str
    components: HealthComponents = Field(default_factory=HealthComponents)
