"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates missing JWT secrets with a
      warning; production mode refuses to start without them.

Security notes:
  [M6] JWT secrets shorter than 32 chars are rejected outright.

  [M7] Access and refresh tokens are signed with different secrets, so a
       refresh token can never be replayed as an access token (and vice versa)
       even if the type claim check were bypassed.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or admin/.
"""

import logging
import re
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

_EXPIRY_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 60 * 60 * 24}


def parse_expiry(expiry: str) -> int:
    """Convert a duration string such as "15m" or "7d" to seconds.

    Raises ValueError for anything that is not <digits><s|m|h|d>.
    """
    match = _EXPIRY_RE.match(expiry.strip())
    if not match:
        raise ValueError(f"Invalid expiry format: {expiry!r}")
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    app_name: str = "Gatekeeper"
    app_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///gatekeeper.db"

    # ------------------------------------------------------------------
    # JWT
    # ------------------------------------------------------------------

    # Empty string is the "not configured" sentinel; see validate_secrets().
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_access_expiry: str = "15m"
    jwt_refresh_expiry: str = "7d"
    # Lifetime of the partial session between password and second factor.
    two_factor_pending_expiry: str = "5m"

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_domain: str | None = None

    # ------------------------------------------------------------------
    # Two-factor authentication
    # ------------------------------------------------------------------

    # Fernet key for TOTP secrets at rest. Derived from the access secret
    # when unset (logged as a warning at first use).
    two_factor_encryption_key: str = ""
    backup_code_count: int = 10

    # ------------------------------------------------------------------
    # Admin console
    # ------------------------------------------------------------------

    admin_path: str = "/admin"
    invite_expire_days: int = 7

    default_admin_username: str = "admin"
    default_admin_email: str = "admin@example.com"
    default_admin_password: str = "Admin123!"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_expire_seconds(self) -> int:
        return parse_expiry(self.jwt_access_expiry)

    @property
    def refresh_expire_seconds(self) -> int:
        return parse_expiry(self.jwt_refresh_expiry)

    @property
    def two_factor_pending_seconds(self) -> int:
        return parse_expiry(self.two_factor_pending_expiry)

    @property
    def admin_base_path(self) -> str:
        return self.admin_path.rstrip("/") or "/admin"

    def admin_url(self, path: str = "") -> str:
        """Build an admin console path, e.g. admin_url("users") -> "/admin/users"."""
        if not path:
            return self.admin_base_path
        relative = path if path.startswith("/") else f"/{path}"
        return f"{self.admin_base_path}{relative}"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the JWT secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.

        Both modes: reject secrets shorter than 32 characters, identical access
        and refresh secrets, and malformed expiry strings.
        """
        for field in ("jwt_access_secret", "jwt_refresh_secret"):
            if not getattr(self, field):
                if self.debug:
                    setattr(self, field, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        field.upper(),
                    )
                else:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field)) < 32:
                raise ValueError(f"{field.upper()} must be at least 32 characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        for field in ("jwt_access_expiry", "jwt_refresh_expiry", "two_factor_pending_expiry"):
            parse_expiry(getattr(self, field))
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
