"""
API request and response models for the portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py,
tenancy/models.py and audit/models.py, which own the internal domain
representation. Route handlers map between the two.

Wire format is camelCase (accessToken, firstName, roleNames). Models accept
both camelCase and snake_case on input (populate_by_name) and FastAPI
serializes responses by alias.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt reads at most 72 bytes and bcrypt>=5 refuses longer input outright.
PASSWORD_MAX = 72
PASSWORD_MIN = 8


def _fits_bcrypt(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX:
        raise ValueError(f"Password must be at most {PASSWORD_MAX} bytes when UTF-8 encoded.")
    return value


NewPassword = Annotated[
    str, Field(min_length=PASSWORD_MIN, max_length=PASSWORD_MAX), AfterValidator(_fits_bcrypt)
]

# Identifiers and display text are trimmed on input. Passwords are plain str and
# reach bcrypt byte for byte.
Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]

OrganizationStatus = Literal["active", "new", "liquidating", "left", "closed", "not_paying", "archived"]
SectionMemberRole = Literal["manager", "accountant", "auditor"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(CamelModel):
    email: Trimmed = Field(min_length=1, max_length=255)
    # No password policy here: a short wrong password must get the same 401 as any other.
    password: str = Field(min_length=1, max_length=PASSWORD_MAX)


class UserSummary(CamelModel):
    id: int
    email: str
    first_name: str
    last_name: str
    roles: list[str]


class LoginResponse(CamelModel):
    access_token: str
    user: UserSummary


class AccessTokenResponse(CamelModel):
    access_token: str


class MeResponse(CamelModel):
    user_id: int
    roles: list[str]


class StaffCreate(CamelModel):
    email: Trimmed = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: NewPassword
    first_name: Trimmed = Field(default="", max_length=100)
    last_name: Trimmed = Field(default="", max_length=100)
    role_names: list[str]


class InviteCreate(CamelModel):
    organization_id: int


class InviteResponse(CamelModel):
    token: str
    expires_at: datetime


class InviteInfoResponse(CamelModel):
    valid: bool
    organization_id: Optional[int] = None
    organization_name: Optional[str] = None
    reason: Optional[Literal["not_found", "used", "expired"]] = None


class RegisterRequest(CamelModel):
    email: Trimmed = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: NewPassword
    first_name: Trimmed = Field(default="", max_length=100)
    last_name: Trimmed = Field(default="", max_length=100)
    invite_token: Trimmed = Field(min_length=1, max_length=128)


class AcceptInviteRequest(CamelModel):
    invite_token: Trimmed = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(CamelModel):
    id: int
    email: str
    first_name: str
    last_name: str
    is_active: bool
    roles: list[str]
    created_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None


class UserUpdate(CamelModel):
    """PUT /users/{id}. Omitted fields are left unchanged (see model_fields_set)."""

    first_name: Optional[Trimmed] = Field(default=None, max_length=100)
    last_name: Optional[Trimmed] = Field(default=None, max_length=100)
    email: Optional[Trimmed] = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    role_names: Optional[list[str]] = None
    is_active: Optional[bool] = None


class PasswordChange(CamelModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX)
    new_password: NewPassword


# ---------------------------------------------------------------------------
# Tenancy
# ---------------------------------------------------------------------------


class MemberResponse(CamelModel):
    user_id: int
    role: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class SectionCreate(CamelModel):
    number: int = Field(ge=1)
    name: Trimmed = Field(default="", max_length=255)


class SectionUpdate(CamelModel):
    number: Optional[int] = Field(default=None, ge=1)
    name: Optional[Trimmed] = Field(default=None, max_length=255)


class SectionMemberAdd(CamelModel):
    email: Trimmed = Field(min_length=1, max_length=255)
    role: SectionMemberRole


class SectionResponse(CamelModel):
    id: int
    number: int
    name: str
    member_count: int = 0
    organization_count: int = 0
    created_at: Optional[datetime] = None


class SectionListResponse(CamelModel):
    sections: list[SectionResponse]
    total: int
    page: int
    limit: int


class SectionStatsResponse(CamelModel):
    organizations_by_status: dict[str, int]
    member_count: int
    computed_at: Optional[datetime] = None


class OrganizationCreate(CamelModel):
    name: Trimmed = Field(min_length=1, max_length=255)
    inn: Optional[Trimmed] = Field(default=None, pattern=r"^\d{10}(\d{2})?$")
    status: OrganizationStatus = "active"
    section_id: Optional[int] = None


class OrganizationUpdate(CamelModel):
    name: Optional[Trimmed] = Field(default=None, min_length=1, max_length=255)
    inn: Optional[Trimmed] = Field(default=None, pattern=r"^\d{10}(\d{2})?$")
    status: Optional[OrganizationStatus] = None
    section_id: Optional[int] = None


class OrganizationMemberAdd(CamelModel):
    email: Trimmed = Field(min_length=1, max_length=255)
    role: Trimmed = Field(default="client", max_length=20)


class OrganizationResponse(CamelModel):
    id: int
    name: str
    inn: Optional[str] = None
    status: str
    section_id: Optional[int] = None
    created_at: Optional[datetime] = None


class OrganizationListResponse(CamelModel):
    organizations: list[OrganizationResponse]
    total: int
    page: int
    limit: int


class SectionDetailResponse(SectionResponse):
    members: list[MemberResponse]
    organizations: list[OrganizationResponse]
    stats: Optional[SectionStatsResponse] = None


class OrganizationDetailResponse(OrganizationResponse):
    section: Optional[SectionResponse] = None
    members: list[MemberResponse]


class ProfileResponse(UserResponse):
    permissions: list[str]
    organizations: list[OrganizationResponse]


class StatsResponse(CamelModel):
    organizations_by_status: dict[str, int]
    organizations_total: int
    sections_total: Optional[int] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditLogEntryResponse(CamelModel):
    id: int
    user_id: Optional[int] = None
    user_email: Optional[str] = None
    action: str
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    details: Any = None
    ip_address: Optional[str] = None
    created_at: datetime


class AuditLogListResponse(CamelModel):
    data: list[AuditLogEntryResponse]
    total: int
    page: int
    limit: int
