"""
api/routes/v1/auth.py -- Session and account-creation REST endpoints.

Routes:
  POST /api/v1/auth/login               -- password login; access token in body, refresh cookie
  POST /api/v1/auth/refresh             -- rotate the refresh cookie; new access token
  POST /api/v1/auth/logout              -- revoke the caller's refresh token; clear cookie
  GET  /api/v1/auth/me                  -- identity snapshot of the access token
  POST /api/v1/auth/staff               -- create a staff account (user:create)
  POST /api/v1/auth/invite              -- invite a client into one organization (organization:edit)
  GET  /api/v1/auth/invite-info/{token} -- public invite status for the registration page
  POST /api/v1/auth/register            -- public, gated by a valid invite
  POST /api/v1/auth/accept-invite       -- existing user joins the invite's organization

Security:
  [H2] POST /login and POST /register are rate-limited per client IP.
  [C1] authenticate_user() runs bcrypt on every path -- use it, never inline.
  [C2] Every failed login returns the identical bad_credentials body, whether
       the email is unknown, the password is wrong, or the account is inactive.
  [C3] The raw refresh token only ever travels in the httpOnly cookie. It is
       never put in a JSON body and never logged. Failed rotation clears it
       (handled centrally for RefreshRejected in api/main.py).
  [M5] Cache-Control: no-store on every response that carries a credential.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import credential_rate_limit, limiter
from api.models import (
    AcceptInviteRequest,
    AccessTokenResponse,
    InviteCreate,
    InviteInfoResponse,
    InviteResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    StaffCreate,
    UserResponse,
    UserSummary,
)
from audit.logger import AuditLogger
from auth.dependencies import client_ip, get_identity, require_permission
from auth.models import Identity, InviteToken, User
from auth.permissions import CLIENT, single_staff_role
from auth.sessions import IssuedSession, TokenService
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    clear_refresh_cookie,
    generate_invite_token,
    hash_password,
    set_refresh_cookie,
)
from core.config import get_settings
from core.errors import ConflictError, NotFoundError, ValidationError
from core.predicates import MATCH_ALL
from core.timestamps import utcnow
from tenancy.models import OrganizationMember
from tenancy.scope import ORGANIZATION, scope_filter
from tenancy.store import TenancyStore

logger = logging.getLogger("portal.auth")

# Auth policy:
# - POST /auth/login, /auth/refresh, /auth/register, GET /auth/invite-info: public
# - POST /auth/logout, /auth/accept-invite, GET /auth/me: bearer token (get_identity)
# - POST /auth/staff: user:create
# - POST /auth/invite: organization:edit + organization within caller scope
router = APIRouter()


def _bad_credentials() -> JSONResponse:
    resp = JSONResponse(
        status_code=401,
        content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _session_response(session: IssuedSession, content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    set_refresh_cookie(resp, session.refresh_token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _summary(user: User) -> UserSummary:
    return UserSummary(
        id=user.id, email=user.email, first_name=user.first_name, last_name=user.last_name, roles=user.roles
    )


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        is_active=user.is_active,
        roles=user.roles,
        created_at=user.created_at,
        last_seen_at=user.last_seen_at,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(credential_rate_limit)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Success: {accessToken, user} plus the refresh cookie; audits "login".
    Failure: the single bad_credentials body [C2]; audits "login_failed".
    """
    user_store: UserStore = request.app.state.user_store
    audit: AuditLogger = request.app.state.audit
    ip = client_ip(request)

    user, ok = authenticate_user(user_store, body.email, body.password)
    if not ok:
        audit.log(
            "login_failed",
            actor_id=user.id if user else None,
            entity="user",
            entity_id=user.id if user else None,
            details={"email": body.email.strip().lower()},
            ip_address=ip,
        )
        return _bad_credentials()

    session = request.app.state.token_service.open_session(user)
    audit.log("login", actor_id=user.id, entity="user", entity_id=user.id, ip_address=ip)
    content = LoginResponse(access_token=session.access_token, user=_summary(user)).model_dump(by_alias=True)
    return _session_response(session, content)


@router.post("/auth/refresh", response_model=AccessTokenResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a rotated cookie.

    Any failure raises RefreshRejected: 401 and the cookie is cleared [C3].
    """
    service: TokenService = request.app.state.token_service
    session = service.rotate(request.cookies.get(get_settings().refresh_cookie_name))
    return _session_response(session, AccessTokenResponse(access_token=session.access_token).model_dump(by_alias=True))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, identity: Identity = Depends(get_identity)) -> JSONResponse:
    """Revoke the caller's refresh token (if the cookie is theirs) and clear the cookie."""
    service: TokenService = request.app.state.token_service
    service.revoke_one(request.cookies.get(get_settings().refresh_cookie_name), identity.user_id)
    request.app.state.audit.log(
        "logout", actor_id=identity.user_id, entity="user", entity_id=identity.user_id, ip_address=client_ip(request)
    )
    resp = JSONResponse(content={"message": "Logged out."})
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(identity: Identity = Depends(get_identity)) -> MeResponse:
    """Return the identity carried by the access token."""
    return MeResponse(user_id=identity.user_id, roles=list(identity.roles))


# ---------------------------------------------------------------------------
# Account creation
# ---------------------------------------------------------------------------


@router.post("/auth/staff", response_model=UserResponse, status_code=201)
def create_staff(
    request: Request,
    body: StaffCreate,
    identity: Identity = Depends(require_permission("user", "create")),
) -> UserResponse:
    """Create a staff account holding exactly one of admin/manager/accountant."""
    role = single_staff_role(body.role_names)
    if role is None:
        raise ValidationError("roleNames must contain exactly one of: admin, manager, accountant.")

    user_store: UserStore = request.app.state.user_store
    new_user = User(
        email=body.email,
        password_hash=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    try:
        user_id = user_store.create_user(new_user, [role])
    except IntegrityError as exc:
        raise ConflictError("A user with that email already exists.") from exc

    request.app.state.audit.log(
        "staff_created",
        actor_id=identity.user_id,
        entity="user",
        entity_id=user_id,
        details={"email": new_user.email.lower(), "roleNames": [role]},
        ip_address=client_ip(request),
    )
    return user_to_response(user_store.get_by_id(user_id))


@router.post("/auth/invite", response_model=InviteResponse, status_code=201)
def create_invite(
    request: Request,
    body: InviteCreate,
    identity: Identity = Depends(require_permission("organization", "edit")),
) -> InviteResponse:
    """Issue a single-use invite into one organization the caller can see."""
    tenancy: TenancyStore = request.app.state.tenancy_store
    org = tenancy.get_organization(body.organization_id, scope_filter(ORGANIZATION, identity))
    if org is None:
        raise NotFoundError("Organization not found.")

    invite = InviteToken(
        token=generate_invite_token(),
        organization_id=org.id,
        created_by_id=identity.user_id,
        expires_at=utcnow() + timedelta(hours=get_settings().invite_expire_hours),
    )
    request.app.state.user_store.create_invite(invite)
    request.app.state.audit.log(
        "invite_created",
        actor_id=identity.user_id,
        entity="organization",
        entity_id=org.id,
        details={"expiresAt": invite.expires_at.isoformat()},
        ip_address=client_ip(request),
    )
    return InviteResponse(token=invite.token, expires_at=invite.expires_at)


@router.get("/auth/invite-info/{token}", response_model=InviteInfoResponse)
def invite_info(request: Request, token: str) -> InviteInfoResponse:
    """Tell the registration page whether an invite can still be used."""
    invite = request.app.state.user_store.get_invite(token)
    if invite is None:
        return InviteInfoResponse(valid=False, reason="not_found")
    if invite.used_at is not None:
        return InviteInfoResponse(valid=False, reason="used")
    if invite.expires_at <= utcnow():
        return InviteInfoResponse(valid=False, reason="expired")
    # Authorized by possession of the invite token, not by scope.
    org = request.app.state.tenancy_store.get_organization(invite.organization_id, MATCH_ALL)
    return InviteInfoResponse(
        valid=True,
        organization_id=invite.organization_id,
        organization_name=org.name if org else None,
    )


@router.post("/auth/register", response_model=LoginResponse, status_code=201)
@limiter.limit(credential_rate_limit)  # [H2]
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a client account through an invite and sign it in.

    The invite is consumed and the user inserted in one transaction; a
    duplicate email (409) leaves the invite unused.
    """
    user_store: UserStore = request.app.state.user_store
    new_user = User(
        email=body.email,
        password_hash=hash_password(body.password),
        first_name=body.first_name,
        last_name=body.last_name,
    )
    try:
        result = user_store.register_invited_user(new_user, [CLIENT], body.invite_token)
    except IntegrityError as exc:
        raise ConflictError("A user with that email already exists.") from exc
    if result is None:
        raise ValidationError("Invite is invalid, already used, or expired.")
    user_id, invite = result

    request.app.state.tenancy_store.add_organization_member(
        OrganizationMember(organization_id=invite.organization_id, user_id=user_id, role=CLIENT)
    )
    user = user_store.get_by_id(user_id)
    session = request.app.state.token_service.open_session(user)
    request.app.state.audit.log(
        "user_registered",
        actor_id=user_id,
        entity="user",
        entity_id=user_id,
        details={"email": user.email, "organizationId": invite.organization_id},
        ip_address=client_ip(request),
    )
    content = LoginResponse(access_token=session.access_token, user=_summary(user)).model_dump(by_alias=True)
    return _session_response(session, content, status_code=201)


@router.post("/auth/accept-invite", response_model=MessageResponse)
def accept_invite(
    request: Request, body: AcceptInviteRequest, identity: Identity = Depends(get_identity)
) -> MessageResponse:
    """Join the invite's organization as a client with an existing account."""
    user_store: UserStore = request.app.state.user_store
    tenancy: TenancyStore = request.app.state.tenancy_store

    pending = user_store.get_invite(body.invite_token)
    if pending is None or pending.used_at is not None or pending.expires_at <= utcnow():
        raise ValidationError("Invite is invalid, already used, or expired.")
    if any(m.user_id == identity.user_id for m in tenancy.list_organization_members(pending.organization_id)):
        raise ConflictError("You are already a member of this organization.")

    invite = user_store.consume_invite(body.invite_token)
    if invite is None:
        raise ValidationError("Invite is invalid, already used, or expired.")
    try:
        tenancy.add_organization_member(
            OrganizationMember(organization_id=invite.organization_id, user_id=identity.user_id, role=CLIENT)
        )
    except IntegrityError as exc:
        raise ConflictError("You are already a member of this organization.") from exc
    user_store.add_user_role(identity.user_id, CLIENT)

    request.app.state.audit.log(
        "invite_accepted",
        actor_id=identity.user_id,
        entity="organization",
        entity_id=invite.organization_id,
        ip_address=client_ip(request),
    )
    return MessageResponse(message="Invite accepted.")

