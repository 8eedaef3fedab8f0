"""
auth/permissions.py -- Role catalogue and permission decisions.

The role -> permission grants below are the single declarative source. The
credential store seeds them idempotently at startup; nothing else writes to
the role_permissions table.

Two kinds of checks, one policy:
  has_role()        reads Identity.roles (the signed token snapshot, or the
                    live roles when ROLE_SOURCE=live).
  has_permission()  always queries the store live by user id, never cached.

Layer rule: no imports from api/, tenancy/, or audit/.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from auth.models import Identity

if TYPE_CHECKING:
    from auth.store import UserStore

ADMIN = "admin"
MANAGER = "manager"
ACCOUNTANT = "accountant"
CLIENT = "client"

ROLES: tuple[str, ...] = (ADMIN, MANAGER, ACCOUNTANT, CLIENT)

# Exactly one of these is assigned to a staff account.
STAFF_ROLES: tuple[str, ...] = (ADMIN, MANAGER, ACCOUNTANT)

_ENTITIES = ("user", "section", "organization", "document")
_ACTIONS = ("view", "create", "edit", "delete")

PERMISSIONS: tuple[tuple[str, str], ...] = tuple((e, a) for e in _ENTITIES for a in _ACTIONS) + (
    ("audit_log", "view"),
)

ROLE_PERMISSIONS: dict[str, tuple[tuple[str, str], ...]] = {
    ADMIN: PERMISSIONS,
    MANAGER: (
        ("user", "view"),
        ("section", "view"),
        ("organization", "view"),
        ("document", "view"),
        ("audit_log", "view"),
    ),
    ACCOUNTANT: (
        ("section", "view"),
        ("organization", "view"),
        ("organization", "edit"),
        ("document", "view"),
        ("document", "create"),
        ("document", "edit"),
    ),
    CLIENT: (
        ("organization", "view"),
        ("document", "view"),
        ("document", "create"),
    ),
}


def has_role(identity: Identity, *names: str) -> bool:
    return identity.has_role(*names)


def has_permission(store: UserStore, user_id: int, entity: str, action: str) -> bool:
    return store.has_permission(user_id, entity, action)


def has_any_permission(store: UserStore, user_id: int, pairs: Iterable[tuple[str, str]]) -> bool:
    """True if the user holds at least one of the (entity, action) pairs."""
    return any(store.has_permission(user_id, entity, action) for entity, action in pairs)


def single_staff_role(role_names: Iterable[str]) -> str | None:
    """Return the role if role_names is exactly one staff role, else None."""
    names = list(role_names)
    if len(names) != 1 or names[0] not in STAFF_ROLES:
        return None
    return names[0]
