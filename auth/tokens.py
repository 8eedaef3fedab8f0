"""
auth/tokens.py -- Access tokens, password hashing, and opaque secret utilities.

Security design decisions:
  Access tokens: python-jose with HS256. Payload is a snapshot of
       {user_id, roles} at issuance plus a short expiry. Verification is
       stateless (signature + expiry) and returns None on any failure -- the
       dependency layer turns that into a 401 without disclosing the cause.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email exists or whether the account is active [C1].

  Refresh tokens: secrets.token_hex(48) -- 384 bits of randomness. Only
       sha256(raw) is persisted; the raw value travels exclusively in an
       httpOnly cookie scoped to the auth router path and is never logged.
       A plain hash (not HMAC, not bcrypt) suffices: the input is already
       high-entropy, so the hash only has to be one-way and deterministic.

  Invite tokens: secrets.token_hex(32) -- 256 bits, single use.

Layer rule: no imports from api/, tenancy/, or audit/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import Identity
from core.config import get_settings
from core.timestamps import utcnow

if TYPE_CHECKING:
    from fastapi import Response

    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("portal.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt accepts at most 72 bytes of input. The API models and the CLI
    reject longer passwords before they reach this function.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash. Treat as a mismatch rather than a 500.
        return False


# Timing equalization dummy hash [C1]. Always call verify_password() even when
# the email does not exist, so bcrypt's work factor hides account existence.
_DUMMY_HASH: str = hash_password("portal_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> tuple[User | None, bool]:
    """Check an email/password pair with timing equalization.

    Returns (user, ok). user is the matching account (or None if the email is
    unknown) so callers can attribute a failed attempt; ok is True only when
    the account exists, is active, and the password matches. bcrypt runs on
    every path [C1].
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None, False
    if not verify_password(password, user.password_hash):
        return user, False
    if not user.is_active:
        return user, False
    return user, True


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, roles: list[str] | tuple[str, ...], expire_seconds: int = 0) -> str:
    """Encode a signed access token carrying a role snapshot.

    Args:
        user_id:        Numeric user id.
        roles:          Role names at issuance time.
        expire_seconds: Lifetime in seconds. 0 means ACCESS_TOKEN_EXPIRE_SECONDS.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "roles": list(roles),
        "type": _TOKEN_TYPE,
        "exp": utcnow() + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> Identity | None:
    """Verify signature and expiry. Returns the Identity or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != _TOKEN_TYPE:
        return None
    user_id = payload.get("user_id")
    roles = payload.get("roles")
    if not isinstance(user_id, int) or not isinstance(roles, list):
        return None
    return Identity(user_id=user_id, roles=tuple(str(r) for r in roles))


# ---------------------------------------------------------------------------
# Opaque secrets
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    return secrets.token_hex(48)


def generate_invite_token() -> str:
    return secrets.token_hex(32)


def hash_token(raw: str) -> str:
    """sha256 hex digest of a raw refresh token. The only form ever persisted."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response: Response, raw_token: str) -> None:
    """Write the refresh token as an httpOnly cookie limited to the auth path.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite: lax by default -- not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the server-side refresh token expiry.
    """
    response.set_cookie(
        _settings.refresh_cookie_name,
        value=raw_token,
        httponly=True,
        samesite=_settings.refresh_cookie_samesite,
        secure=_settings.secure_cookies,
        path=_settings.refresh_cookie_path,
        max_age=_settings.refresh_token_expire_days * 24 * 3600,
    )


def clear_refresh_cookie(response: Response) -> None:
    """Expire the refresh cookie. Attributes must match set_refresh_cookie()."""
    response.delete_cookie(
        _settings.refresh_cookie_name,
        path=_settings.refresh_cookie_path,
        httponly=True,
        samesite=_settings.refresh_cookie_samesite,
        secure=_settings.secure_cookies,
    )
