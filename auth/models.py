"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and routes do
the work; these only own the shape.

Layer rule: no imports from api/, admin/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ADMIN_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.SUPER_ADMIN})


@dataclass
class User:
    """An account. hashed_password is never serialized to clients.

    two_factor_secret holds the Fernet-encrypted TOTP secret. It is set during
    setup (pending state) before two_factor_enabled flips to True, so the
    secret alone does not mean 2FA is active -- always check the flag.

    backup_codes holds bcrypt hashes; the plaintext codes are shown once at
    enable time and are unrecoverable afterwards.
    """

    username: str
    email: str
    role: Role = Role.USER
    id: int | None = None
    hashed_password: str | None = None
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    backup_codes: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


@dataclass
class RefreshToken:
    """A persisted refresh token.

    Only the HMAC of the JWT is stored (token_hash). A leaked database dump
    therefore cannot be used to mint sessions without also knowing the
    refresh secret.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
