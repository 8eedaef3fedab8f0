"""
api/routes/v1/users.py -- User directory, profile, and admin account management.

Routes:
  GET    /api/v1/users              -- user picker (user:view OR section:edit OR organization:edit)
  GET    /api/v1/users/me           -- own profile with roles, permissions, organizations
  PATCH  /api/v1/users/me/password  -- change own password; revokes every session
  GET    /api/v1/users/{id}         -- admin only
  PUT    /api/v1/users/{id}         -- admin only; profile, roles, active flag
  DELETE /api/v1/users/{id}         -- admin only; deactivate, or hard delete if already inactive

Security:
  [M4] An admin cannot deactivate or delete their own account (400), and
       cannot change roles or the active flag of another admin (403). Both
       checks run before any write, so a refused request leaves no trace in
       the store or the audit trail.
  Deactivation and hard delete revoke every refresh token of the target.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import IntegrityError

from api.models import (
    AccessTokenResponse,
    MessageResponse,
    PasswordChange,
    ProfileResponse,
    UserResponse,
    UserUpdate,
)
from api.routes.v1.auth import user_to_response
from api.routes.v1.organizations import organization_to_response
from auth.dependencies import client_ip, get_identity, require_any_permission, require_role
from auth.models import Identity
from auth.permissions import ADMIN, single_staff_role
from auth.sessions import TokenService
from auth.store import UserStore
from auth.tokens import hash_password, set_refresh_cookie, verify_password
from core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from tenancy.store import TenancyStore

router = APIRouter()

_USER_PICKER_PERMISSIONS = (("user", "view"), ("section", "edit"), ("organization", "edit"))


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    search: str | None = Query(None, max_length=100),
    role: str | None = Query(None),
    exclude_role: str | None = Query(None, alias="excludeRole"),
    identity: Identity = Depends(require_any_permission(*_USER_PICKER_PERMISSIONS)),
) -> list[UserResponse]:
    """Return up to 50 users. Non-admins only see active accounts."""
    user_store: UserStore = request.app.state.user_store
    users = user_store.list_users(
        search=search,
        role=role,
        exclude_role=exclude_role,
        active_only=not identity.has_role(ADMIN),
    )
    return [user_to_response(u) for u in users]


@router.get("/users/me", response_model=ProfileResponse)
def get_profile(request: Request, identity: Identity = Depends(get_identity)) -> ProfileResponse:
    user_store: UserStore = request.app.state.user_store
    tenancy: TenancyStore = request.app.state.tenancy_store
    user = user_store.get_by_id(identity.user_id)
    if user is None:
        raise NotFoundError("User not found.")
    base = user_to_response(user)
    return ProfileResponse(
        **base.model_dump(),
        permissions=[f"{entity}:{action}" for entity, action in user_store.list_permissions(user.id)],
        organizations=[organization_to_response(o) for o in tenancy.organizations_for_user(user.id)],
    )


@router.patch("/users/me/password", response_model=AccessTokenResponse)
def change_password(
    request: Request, body: PasswordChange, identity: Identity = Depends(get_identity)
) -> JSONResponse:
    """Change own password, end every session, and open a fresh one for this client."""
    user_store: UserStore = request.app.state.user_store
    service: TokenService = request.app.state.token_service

    user = user_store.get_by_id(identity.user_id)
    if user is None or not user.is_active:
        raise NotFoundError("User not found.")
    if not verify_password(body.current_password, user.password_hash):
        raise ValidationError("Current password is incorrect.")

    user_store.update_user(user.id, password_hash=hash_password(body.new_password))
    service.revoke_all(user.id)
    session = service.open_session(user)
    request.app.state.audit.log(
        "password_changed", actor_id=user.id, entity="user", entity_id=user.id, ip_address=client_ip(request)
    )

    resp = JSONResponse(content=AccessTokenResponse(access_token=session.access_token).model_dump(by_alias=True))
    set_refresh_cookie(resp, session.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, identity: Identity = Depends(require_role(ADMIN))) -> UserResponse:
    user = request.app.state.user_store.get_by_id(user_id)
    if user is None:
        raise NotFoundError("User not found.")
    return user_to_response(user)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    identity: Identity = Depends(require_role(ADMIN)),
) -> UserResponse:
    """Update a user's profile, role, or active flag.

    Checks run in this order and each stops the request before any write:
      roleNames not exactly one staff role        -> 400
      target missing                              -> 404
      isActive=false on own account               -> 400 [M4]
      roles or isActive of a different admin      -> 403 [M4]
      email taken                                 -> 409
    """
    user_store: UserStore = request.app.state.user_store
    provided = body.model_fields_set

    role = None
    if "role_names" in provided:
        role = single_staff_role(body.role_names or [])
        if role is None:
            raise ValidationError("roleNames must contain exactly one of: admin, manager, accountant.")

    target = user_store.get_by_id(user_id)
    if target is None:
        raise NotFoundError("User not found.")

    is_self = target.id == identity.user_id
    if is_self and "is_active" in provided and body.is_active is False:
        raise ValidationError("You cannot deactivate your own account.")
    if not is_self and ADMIN in target.roles and ({"role_names", "is_active"} & provided):
        raise AuthorizationError("You cannot change the roles or status of another administrator.")

    fields = {}
    for name in ("first_name", "last_name", "email", "is_active"):
        if name in provided and getattr(body, name) is not None:
            fields[name] = getattr(body, name)
    try:
        user_store.update_user(user_id, **fields)
    except IntegrityError as exc:
        raise ConflictError("A user with that email already exists.") from exc

    if role is not None:
        user_store.set_user_roles(user_id, [role])
    if fields.get("is_active") is False:
        request.app.state.token_service.revoke_all(user_id)

    details = dict(fields)
    if role is not None:
        details["role_names"] = [role]
    request.app.state.audit.log(
        "user_updated",
        actor_id=identity.user_id,
        entity="user",
        entity_id=user_id,
        details={to_camel(k): v for k, v in details.items()},
        ip_address=client_ip(request),
    )
    return user_to_response(user_store.get_by_id(user_id))


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: int, identity: Identity = Depends(require_role(ADMIN))) -> MessageResponse:
    """Deactivate an active user; permanently delete one that is already inactive."""
    user_store: UserStore = request.app.state.user_store
    service: TokenService = request.app.state.token_service

    if user_id == identity.user_id:
        raise ValidationError("You cannot delete your own account.")
    target = user_store.get_by_id(user_id)
    if target is None:
        raise NotFoundError("User not found.")
    if ADMIN in target.roles:
        raise AuthorizationError("You cannot delete another administrator.")

    if target.is_active:
        user_store.update_user(user_id, is_active=False)
        service.revoke_all(user_id)
        action, message = "user_deactivated", "User deactivated."
    else:
        request.app.state.tenancy_store.remove_user_memberships(user_id)
        service.revoke_all(user_id)
        user_store.delete_user(user_id)
        action, message = "user_deleted", "User deleted."

    request.app.state.audit.log(
        action,
        actor_id=identity.user_id,
        entity="user",
        entity_id=user_id,
        details={"email": target.email},
        ip_address=client_ip(request),
    )
    return MessageResponse(message=message)
