"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Authentication is Bearer-only: Authorization: Bearer <access token>. The
refresh cookie is never accepted here; it is only read by POST /auth/refresh.

get_identity() verifies the token and returns an Identity. With
ROLE_SOURCE=live it replaces the token's role snapshot with the roles stored
now; with the default ROLE_SOURCE=token the snapshot is trusted until expiry.

require_role(*names) and require_permission(entity, action) are dependency
factories. Both fail closed: they raise before the route body runs, so a
rejected request performs no data access and writes no audit row.

Layer rule: auth/ may import fastapi here because this module is part of the
dependency injection system. No imports from api/, tenancy/, or audit/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.models import Identity
from auth.permissions import has_any_permission, has_permission
from auth.store import UserStore
from auth.tokens import decode_access_token
from core.config import get_settings
from core.errors import AuthenticationError, AuthorizationError


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_identity(request: Request) -> Identity:
    """Require a valid access token. Raises AuthenticationError (401) otherwise.

    The cause (missing, malformed, bad signature, expired) is never disclosed.
    Also dispatches a throttled last-seen stamp in the background.
    """
    token = _bearer_token(request)
    identity = decode_access_token(token) if token else None
    if identity is None:
        raise AuthenticationError()

    settings = get_settings()
    if settings.role_source == "live":
        store: UserStore = request.app.state.user_store
        identity = Identity(user_id=identity.user_id, roles=tuple(store.get_role_names(identity.user_id)))

    request.app.state.dispatcher.dispatch(
        "touch_last_seen",
        request.app.state.user_store.touch_last_seen,
        identity.user_id,
        settings.last_seen_interval_seconds,
    )
    return identity


def require_role(*names: str) -> Callable[..., Identity]:
    """Dependency factory: 403 unless the identity holds one of the roles.

    Roles come from the identity (see ROLE_SOURCE); the account must still
    be active, which is always read live.

        @router.get("/audit-logs")
        def route(identity: Identity = Depends(require_role("admin"))): ...
    """

    def dependency(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
        if not identity.has_role(*names):
            raise AuthorizationError()
        user = request.app.state.user_store.get_by_id(identity.user_id)
        if user is None or not user.is_active:
            raise AuthorizationError()
        return identity

    return dependency


def require_permission(entity: str, action: str) -> Callable[..., Identity]:
    """Dependency factory: 403 unless the user holds (entity, action), checked live."""

    def dependency(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
        if not has_permission(request.app.state.user_store, identity.user_id, entity, action):
            raise AuthorizationError()
        return identity

    return dependency


def require_any_permission(*pairs: tuple[str, str]) -> Callable[..., Identity]:
    """Dependency factory: 403 unless the user holds at least one of the pairs."""

    def dependency(request: Request, identity: Identity = Depends(get_identity)) -> Identity:
        if not has_any_permission(request.app.state.user_store, identity.user_id, pairs):
            raise AuthorizationError()
        return identity

    return dependency


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None
