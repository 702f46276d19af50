"""
auth/passwords.py -- Password hashing, password policy and credential checks.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). passlib's wrap-bug
       detection feeds bcrypt 4.x a >72-byte password, which it rejects.
       The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether an
       account exists [C1].

  Policy: at least 8 characters drawn from letters, digits and @$!%*?&, with
       at least one lowercase, one uppercase, one digit and one special
       character. validate_password_strength() reports the first failing rule
       so the client can show a specific message.

Layer rule: no imports from api/ or admin/.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The API layer caps password
    fields at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
SPECIAL_CHARACTERS = "@$!%*?&"

PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")

_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
    (re.compile(r"[@$!%*?&]"), f"Password must contain at least one special character ({SPECIAL_CHARACTERS})"),
]


def validate_password_strength(password: str) -> str | None:
    """Return None if the password satisfies the policy, else the first failing rule's message."""
    if len(password) < PASSWORD_MIN_LENGTH:
        return f"Password must be at least {PASSWORD_MIN_LENGTH} characters"
    for pattern, message in _RULES:
        if not pattern.search(password):
            return message
    if not PASSWORD_PATTERN.match(password):
        return f"Password may only contain letters, numbers and {SPECIAL_CHARACTERS}"
    return None


# ---------------------------------------------------------------------------
# User authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email_or_username: str, password: str) -> User | None:
    """Authenticate a password login with timing equalization.

    The identifier is normalized to lowercase and matched against both email
    and username. bcrypt runs whether or not the account exists:
    - Unknown account: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email_or_username(email_or_username.strip().lower())
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user
