"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores and
services do the work; these own the domain shape.

Layer rule: no imports from api/, tenancy/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """A portal account, staff or client.

    email is stored lower-cased and is the login name. Deactivation is soft
    (is_active=False); a hard delete is only allowed once already inactive.
    roles is populated by the store on reads and ignored on writes.
    """

    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    id: int | None = None
    created_at: datetime | None = None
    last_seen_at: datetime | None = None
    roles: list[str] = field(default_factory=list)


@dataclass
class RefreshToken:
    """One row = one currently valid session credential.

    Only sha256(raw) is persisted. Rows are inserted and deleted, never
    updated: rotation deletes the row and inserts a replacement.
    """

    jti: str
    token_hash: str
    user_id: int
    expires_at: datetime
    id: int | None = None


@dataclass
class InviteToken:
    """Single-use, time-boxed invitation into exactly one organization."""

    token: str
    organization_id: int
    created_by_id: int
    expires_at: datetime
    used_at: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class Identity:
    """The verified caller of a request.

    Built from a decoded access token. roles is the snapshot signed into the
    token unless ROLE_SOURCE=live, in which case it is re-read per request.
    """

    user_id: int
    roles: tuple[str, ...] = ()

    def has_role(self, *names: str) -> bool:
        return any(name in self.roles for name in names)
