"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - bcrypt hash/verify, including malformed hashes
  - authenticate_user() outcome for unknown, wrong-password, and inactive users
  - access token round trip carries the {user_id, roles} snapshot
  - tampered, expired, and wrong-type tokens decode to None
  - refresh / invite secrets have the expected entropy and only their hash is stable
"""

from __future__ import annotations

import os
from datetime import timedelta

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from jose import jwt

from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    create_access_token,
    decode_access_token,
    generate_invite_token,
    generate_refresh_token,
    hash_password,
    hash_token,
    verify_password,
)
from core.config import get_settings
from core.timestamps import utcnow


class TestPasswords:
    def test_hash_then_verify(self):
        hashed = hash_password("s3cret-password")
        assert hashed != "s3cret-password"
        assert verify_password("s3cret-password", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_malformed_hash_is_rejected_not_raised(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAuthenticateUser:
    """authenticate_user() returns (user, ok); ok is False on every failure path."""

    def setup_method(self):
        self.store = UserStore("sqlite:///:memory:")
        self.active_id = self.store.create_user(
            User(email="Active@Example.com", password_hash=hash_password("right-password")), ["manager"]
        )
        self.inactive_id = self.store.create_user(
            User(email="gone@example.com", password_hash=hash_password("right-password"), is_active=False),
            ["manager"],
        )

    def teardown_method(self):
        self.store.close()

    def test_correct_password_succeeds_case_insensitive_email(self):
        user, ok = authenticate_user(self.store, "active@EXAMPLE.com", "right-password")
        assert ok
        assert user.id == self.active_id
        assert user.roles == ["manager"]

    def test_unknown_email_fails(self):
        user, ok = authenticate_user(self.store, "nobody@example.com", "right-password")
        assert not ok
        assert user is None

    def test_wrong_password_fails(self):
        _, ok = authenticate_user(self.store, "active@example.com", "wrong-password")
        assert not ok

    def test_inactive_account_fails_even_with_correct_password(self):
        _, ok = authenticate_user(self.store, "gone@example.com", "right-password")
        assert not ok


class TestAccessTokens:
    def test_round_trip_carries_role_snapshot(self):
        token = create_access_token(42, ["accountant", "client"])
        identity = decode_access_token(token)
        assert identity is not None
        assert identity.user_id == 42
        assert identity.roles == ("accountant", "client")
        assert identity.has_role("client")
        assert not identity.has_role("admin")

    def test_tampered_signature_is_rejected(self):
        token = create_access_token(1, ["admin"])
        head, payload, sig = token.split(".")
        tampered = ".".join([head, payload, sig[::-1]])
        assert decode_access_token(tampered) is None

    def test_foreign_key_is_rejected(self):
        forged = jwt.encode(
            {"sub": "1", "user_id": 1, "roles": ["admin"], "type": "access", "exp": utcnow() + timedelta(minutes=5)},
            "x" * 40,
            algorithm="HS256",
        )
        assert decode_access_token(forged) is None

    def test_expired_token_is_rejected(self):
        expired = jwt.encode(
            {"sub": "1", "user_id": 1, "roles": ["admin"], "type": "access", "exp": utcnow() - timedelta(seconds=5)},
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(expired) is None

    def test_wrong_token_type_is_rejected(self):
        other = jwt.encode(
            {"sub": "1", "user_id": 1, "roles": ["admin"], "type": "refresh", "exp": utcnow() + timedelta(minutes=5)},
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(other) is None

    def test_garbage_is_rejected(self):
        assert decode_access_token("not.a.jwt") is None


class TestOpaqueSecrets:
    def test_refresh_token_has_at_least_256_bits(self):
        raw = generate_refresh_token()
        assert len(raw) * 4 >= 256
        assert raw != generate_refresh_token()

    def test_invite_token_is_256_bit_hex(self):
        raw = generate_invite_token()
        assert len(raw) == 64
        int(raw, 16)

    def test_hash_token_is_deterministic_sha256(self):
        raw = generate_refresh_token()
        assert hash_token(raw) == hash_token(raw)
        assert len(hash_token(raw)) == 64
        assert hash_token(raw) != raw
