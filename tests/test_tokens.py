"""
tests/test_tokens.py -- JWT issuance and verification.

Focus is on the rejections: wrong type, wrong secret, expiry. A token that
verifies under the wrong type would let a refresh token act as an access
token, or a partial 2FA session act as a full one.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.tokens import (
    TokenError,
    create_access_token,
    create_refresh_token,
    create_two_factor_token,
    decode_access_token,
    decode_refresh_token,
    decode_two_factor_token,
    hash_refresh_token,
)
from core.config import get_settings


class TestClaims:
    def test_access_token_claims(self):
        payload = decode_access_token(create_access_token(7, "alice", "ADMIN"))
        assert payload["user_id"] == 7
        assert payload["sub"] == "alice"
        assert payload["role"] == "ADMIN"
        assert payload["type"] == "access"
        assert payload["exp"] - payload["iat"] == get_settings().access_expire_seconds

    def test_refresh_tokens_are_unique(self):
        """Two refresh tokens minted back to back differ thanks to jti."""
        first = create_refresh_token(7, "alice", "USER")
        second = create_refresh_token(7, "alice", "USER")
        assert first != second
        assert decode_refresh_token(first)["jti"] != decode_refresh_token(second)["jti"]

    def test_two_factor_token_is_short_lived(self):
        payload = decode_two_factor_token(create_two_factor_token(7))
        assert payload["exp"] - payload["iat"] == get_settings().two_factor_pending_seconds


class TestRejections:
    def test_refresh_token_is_not_an_access_token(self):
        with pytest.raises(TokenError):
            decode_access_token(create_refresh_token(7, "alice", "USER"))

    def test_two_factor_token_is_not_an_access_token(self):
        """Same secret, different type claim -- must still be rejected."""
        with pytest.raises(TokenError):
            decode_access_token(create_two_factor_token(7))

    def test_access_token_is_not_a_refresh_token(self):
        with pytest.raises(TokenError):
            decode_refresh_token(create_access_token(7, "alice", "USER"))

    def test_expired_token_rejected(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        token = jwt.encode(
            {"user_id": 7, "role": "USER", "type": "access", "iat": past - timedelta(minutes=15), "exp": past},
            get_settings().jwt_access_secret,
            algorithm="HS256",
        )
        with pytest.raises(TokenError):
            decode_access_token(token)

    def test_forged_signature_rejected(self):
        token = jwt.encode(
            {"user_id": 7, "role": "SUPER_ADMIN", "type": "access", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            "x" * 32,
            algorithm="HS256",
        )
        with pytest.raises(TokenError):
            decode_access_token(token)

    def test_garbage_rejected(self):
        with pytest.raises(TokenError):
            decode_access_token("not.a.jwt")


def test_refresh_hash_is_deterministic_hmac():
    token = create_refresh_token(7, "alice", "USER")
    assert hash_refresh_token(token) == hash_refresh_token(token)
    assert len(hash_refresh_token(token)) == 64
    assert hash_refresh_token(token) != hash_refresh_token(token + "x")
