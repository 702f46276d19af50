"""
auth/two_factor.py -- TOTP two-factor authentication and backup codes.

State machine per user (stored on the users row):

    DISABLED  --setup-->    PENDING   (two_factor_secret set, flag off)
    PENDING   --setup-->    PENDING   (secret replaced)
    PENDING   --enable-->   ENABLED   (valid TOTP required; backup codes issued)
    ENABLED   --disable-->  DISABLED  (password required; secret and codes cleared)

Security:
  TOTP: pyotp, RFC 6238 defaults (6 digits, 30 s step), verified with a
       drift window of one step either side.

  Secrets at rest: Fernet-encrypted (cryptography). The key comes from
       TWO_FACTOR_ENCRYPTION_KEY, or is derived from the access secret
       (sha256 -> urlsafe base64) with a warning when unset.

  Backup codes: XXXX-XXXX from an alphabet without 0/O/1/I. Stored as bcrypt
       hashes and shown in plaintext exactly once. Using one removes it.

Layer rule: no imports from api/ or admin/.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from functools import lru_cache
from io import BytesIO

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken

from auth.models import User
from auth.passwords import hash_password, verify_password
from auth.store import UserStore
from core.config import get_settings
from core.errors import BadRequestError, ConflictError, UnauthorizedError

logger = logging.getLogger("gatekeeper.auth.two_factor")

BACKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_BACKUP_GROUP_LENGTH = 4

# ---------------------------------------------------------------------------
# Encryption of stored secrets
# ---------------------------------------------------------------------------


@lru_cache
def _get_fernet() -> Fernet:
    settings = get_settings()
    key = settings.two_factor_encryption_key
    if key:
        return Fernet(key.encode())
    logger.warning(
        "TWO_FACTOR_ENCRYPTION_KEY not set -- deriving from JWT_ACCESS_SECRET. Set it explicitly for production."
    )
    derived = hashlib.sha256(settings.jwt_access_secret.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(derived))


def encrypt_secret(secret: str) -> str:
    return _get_fernet().encrypt(secret.encode()).decode()


def decrypt_secret(ciphertext: str) -> str | None:
    """Return the plaintext secret, or None if it cannot be decrypted (rotated key)."""
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        logger.error("Failed to decrypt a stored TOTP secret; was the encryption key rotated?")
        return None


# ---------------------------------------------------------------------------
# TOTP primitives
# ---------------------------------------------------------------------------


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, account_name: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=get_settings().app_name)


def qr_code_data_url(uri: str) -> str:
    """Render the otpauth URI as a PNG QR code and return it as a data URL."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


def format_secret(secret: str) -> str:
    """Group a base32 secret in blocks of four for manual entry: "ABCD EFGH ..."."""
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


def verify_totp(secret: str, code: str) -> bool:
    code = code.strip().replace(" ", "")
    if not (len(code) == 6 and code.isdigit()):
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=1)


# ---------------------------------------------------------------------------
# Backup codes
# ---------------------------------------------------------------------------


def generate_backup_codes(count: int | None = None) -> list[str]:
    if count is None:
        count = get_settings().backup_code_count
    codes = []
    for _ in range(count):
        chars = "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(_BACKUP_GROUP_LENGTH * 2))
        codes.append(f"{chars[:_BACKUP_GROUP_LENGTH]}-{chars[_BACKUP_GROUP_LENGTH:]}")
    return codes


def _normalize_backup_code(code: str) -> str:
    raw = code.strip().upper().replace("-", "").replace(" ", "")
    return f"{raw[:_BACKUP_GROUP_LENGTH]}-{raw[_BACKUP_GROUP_LENGTH:]}"


def hash_backup_codes(codes: list[str]) -> list[str]:
    return [hash_password(code) for code in codes]


def find_backup_code(hashed_codes: list[str], code: str) -> int | None:
    """Return the index of the stored hash matching code, or None."""
    candidate = _normalize_backup_code(code)
    for index, hashed in enumerate(hashed_codes):
        if verify_password(candidate, hashed):
            return index
    return None


# ---------------------------------------------------------------------------
# State transitions
# ---------------------------------------------------------------------------


def begin_setup(store: UserStore, user: User) -> dict:
    """Store a new pending secret and return what the client needs to enrol.

    Raises ConflictError if 2FA is already enabled.
    """
    if user.two_factor_enabled:
        raise ConflictError("Two-factor authentication is already enabled", code="two_factor_already_enabled")
    secret = generate_secret()
    store.update_user(user.id, two_factor_secret=encrypt_secret(secret))
    uri = provisioning_uri(secret, user.email)
    return {
        "secret": secret,
        "secretFormatted": format_secret(secret),
        "otpauthUrl": uri,
        "qrCode": qr_code_data_url(uri),
    }


def enable(store: UserStore, user: User, code: str) -> list[str]:
    """Confirm the pending secret with a TOTP code and switch 2FA on.

    Returns the plaintext backup codes (shown once).
    """
    if user.two_factor_enabled:
        raise ConflictError("Two-factor authentication is already enabled", code="two_factor_already_enabled")
    if not user.two_factor_secret:
        raise BadRequestError("Run two-factor setup first", code="two_factor_not_setup")
    secret = decrypt_secret(user.two_factor_secret)
    if secret is None or not verify_totp(secret, code):
        raise BadRequestError("Invalid verification code", code="invalid_two_factor_code")
    codes = generate_backup_codes()
    store.update_user(user.id, two_factor_enabled=True, backup_codes=hash_backup_codes(codes))
    logger.info("Two-factor enabled for user_id=%s", user.id)
    return codes


def _require_password(user: User, password: str) -> None:
    if not user.hashed_password or not verify_password(password, user.hashed_password):
        raise UnauthorizedError("Password is incorrect", code="invalid_password")


def disable(store: UserStore, user: User, password: str) -> None:
    if not user.two_factor_enabled:
        raise BadRequestError("Two-factor authentication is not enabled", code="two_factor_not_enabled")
    _require_password(user, password)
    store.update_user(user.id, two_factor_enabled=False, two_factor_secret=None, backup_codes=[])
    logger.info("Two-factor disabled for user_id=%s", user.id)


def regenerate_backup_codes(store: UserStore, user: User, password: str) -> list[str]:
    if not user.two_factor_enabled:
        raise BadRequestError("Two-factor authentication is not enabled", code="two_factor_not_enabled")
    _require_password(user, password)
    codes = generate_backup_codes()
    store.update_user(user.id, backup_codes=hash_backup_codes(codes))
    return codes


def verify_second_factor(store: UserStore, user: User, code: str, is_backup_code: bool = False) -> bool:
    """Check a login-time second factor. A matching backup code is consumed."""
    if not user.two_factor_enabled or not user.two_factor_secret:
        return False
    if is_backup_code:
        index = find_backup_code(user.backup_codes, code)
        if index is None:
            return False
        remaining = user.backup_codes[:index] + user.backup_codes[index + 1 :]
        if not store.consume_backup_code(user.id, user.backup_codes, remaining):
            logger.warning("Backup code list changed concurrently for user_id=%s", user.id)
            return False
        logger.info("Backup code used for user_id=%s (%d left)", user.id, len(remaining))
        return True
    secret = decrypt_secret(user.two_factor_secret)
    return secret is not None and verify_totp(secret, code)
