"""
auth/sessions.py -- Session lifecycle: issue, rotate, revoke.

TokenService owns every transition of a refresh token:

    valid --rotate--> deleted (+ new valid row)
    valid --logout--> deleted
    valid --revoke_all (deactivation / hard delete)--> deleted
    valid --expiry (noticed lazily on next use)--> treated as deleted

Terminal state is deleted; no row is ever resurrected or updated in place.
rotate() raises RefreshRejected on every failure path, and the exception
handler in api/main.py expires the cookie, so a failed or ambiguous rotation
always forces re-authentication.

Access tokens are re-issued with roles read at rotation time, so a role
change reaches a session no later than its next refresh.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from auth.models import RefreshToken, User
from auth.store import UserStore
from auth.tokens import create_access_token, generate_refresh_token, hash_token
from core.errors import RefreshRejected
from core.timestamps import utcnow

logger = logging.getLogger("portal.auth")


@dataclass(frozen=True)
class IssuedSession:
    access_token: str
    refresh_token: str  # raw value; goes into the cookie and nowhere else
    user_id: int
    roles: tuple[str, ...]


class TokenService:
    def __init__(self, store: UserStore, refresh_ttl_days: int = 7) -> None:
        self.store = store
        self.refresh_ttl = timedelta(days=refresh_ttl_days)

    def issue_access_token(self, user_id: int, roles: list[str] | tuple[str, ...]) -> str:
        return create_access_token(user_id, roles)

    def issue_refresh_token(self, user_id: int) -> str:
        """Persist a new refresh token for user_id and return the raw value once."""
        raw = generate_refresh_token()
        self.store.create_refresh_token(self._new_row(raw, user_id))
        return raw

    def open_session(self, user: User) -> IssuedSession:
        """Issue an access + refresh pair (login, registration, password change)."""
        roles = tuple(user.roles)
        return IssuedSession(
            access_token=self.issue_access_token(user.id, roles),
            refresh_token=self.issue_refresh_token(user.id),
            user_id=user.id,
            roles=roles,
        )

    def rotate(self, raw: str | None) -> IssuedSession:
        """Exchange a refresh token for a new pair. Single use.

        Raises RefreshRejected when the cookie is missing, unknown, expired,
        already rotated, or belongs to an inactive account.
        """
        if not raw:
            raise RefreshRejected()
        new_raw = generate_refresh_token()
        user_id = self.store.rotate_refresh_token(hash_token(raw), self._new_row(new_raw, user_id=0))
        if user_id is None:
            logger.info("Refresh token rejected")
            raise RefreshRejected()
        roles = tuple(self.store.get_role_names(user_id))
        return IssuedSession(
            access_token=self.issue_access_token(user_id, roles),
            refresh_token=new_raw,
            user_id=user_id,
            roles=roles,
        )

    def revoke_one(self, raw: str | None, user_id: int) -> bool:
        """Delete the caller's own refresh token. False if absent or not theirs."""
        if not raw:
            return False
        return self.store.delete_refresh_token(hash_token(raw), user_id)

    def revoke_all(self, user_id: int) -> int:
        revoked = self.store.delete_refresh_tokens_for_user(user_id)
        logger.info("Revoked %d refresh token(s) for user %d", revoked, user_id)
        return revoked

    def _new_row(self, raw: str, user_id: int) -> RefreshToken:
        return RefreshToken(
            jti=str(uuid.uuid4()),
            token_hash=hash_token(raw),
            user_id=user_id,
            expires_at=utcnow() + self.refresh_ttl,
        )
