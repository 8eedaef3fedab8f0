"""
tests/test_invites.py -- Staff creation and the invite-driven client onboarding.

Covers:
  - POST /auth/staff: exactly one staff role, 409 on a duplicate email, user:create required
  - POST /auth/invite: only for organizations inside the caller's scope
  - GET /auth/invite-info: valid / not_found / used / expired
  - POST /auth/register: 201 with session cookie, client role and membership;
    a duplicate email leaves the invite unused; a used invite is refused
  - POST /auth/accept-invite: an existing account joins a second organization
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.models import InviteToken
from auth.tokens import verify_password
from conftest import REFRESH_COOKIE, bearer, unique_email
from core.timestamps import utcnow
from tenancy.models import Organization, Section, SectionMember


@pytest.fixture(scope="module")
def orgs(api_client):
    tenancy = api_client.tenancy_store
    section_id = tenancy.create_section(Section(number=77, name="Invites"))
    inside = tenancy.create_organization(Organization(name="Inside LLC", section_id=section_id))
    outside = tenancy.create_organization(Organization(name="Outside LLC"))
    accountant_id, accountant_token = api_client.create_user(["accountant"])
    tenancy.add_section_member(SectionMember(section_id=section_id, user_id=accountant_id, role="accountant"))
    return {"inside": inside, "outside": outside, "accountant_token": accountant_token}


def _invite(portal, org_id, headers=None):
    resp = portal.client.post(
        "/api/v1/auth/invite", json={"organizationId": org_id}, headers=headers or portal.admin_headers()
    )
    assert resp.status_code == 201, f"Expected 201: {resp.text}"
    return resp.json()["token"]


def _register(portal, token, email=None, password="client-password-1"):
    return portal.client.post(
        "/api/v1/auth/register",
        json={"email": email or unique_email("client"), "password": password, "inviteToken": token},
    )


class TestStaff:
    def test_admin_creates_staff(self, portal):
        email = unique_email("Staff")
        resp = portal.client.post(
            "/api/v1/auth/staff",
            json={"email": email, "password": "staff-password", "firstName": "Ivan", "roleNames": ["accountant"]},
            headers=portal.admin_headers(),
        )
        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["email"] == email.lower()
        assert body["roles"] == ["accountant"]
        assert portal.audit_store.count(action="staff_created") >= 1

    def test_password_whitespace_is_kept(self, portal):
        email = unique_email("padded")
        resp = portal.client.post(
            "/api/v1/auth/staff",
            json={"email": f"  {email}  ", "password": "  padded-pass  ", "roleNames": ["manager"]},
            headers=portal.admin_headers(),
        )
        assert resp.status_code == 201, resp.text
        stored = portal.user_store.get_by_email(email)
        assert verify_password("  padded-pass  ", stored.password_hash)
        assert not verify_password("padded-pass", stored.password_hash)

        login = portal.client.post("/api/v1/auth/login", json={"email": email, "password": "  padded-pass  "})
        assert login.status_code == 200, login.text

    @pytest.mark.parametrize("roles", [["client"], ["manager", "admin"], []])
    def test_role_must_be_single_staff_role(self, portal, roles):
        resp = portal.client.post(
            "/api/v1/auth/staff",
            json={"email": unique_email("staff"), "password": "staff-password", "roleNames": roles},
            headers=portal.admin_headers(),
        )
        assert resp.status_code == 400

    def test_duplicate_email_is_409(self, portal):
        email = unique_email("dup")
        portal.create_user(["manager"], email=email)
        resp = portal.client.post(
            "/api/v1/auth/staff",
            json={"email": email.upper(), "password": "staff-password", "roleNames": ["manager"]},
            headers=portal.admin_headers(),
        )
        assert resp.status_code == 409

    def test_manager_cannot_create_staff(self, portal):
        _, token = portal.create_user(["manager"])
        resp = portal.client.post(
            "/api/v1/auth/staff",
            json={"email": unique_email("staff"), "password": "staff-password", "roleNames": ["manager"]},
            headers=bearer(token),
        )
        assert resp.status_code == 403


class TestInviteCreation:
    def test_accountant_invites_into_own_section(self, portal, orgs):
        token = _invite(portal, orgs["inside"], headers=bearer(orgs["accountant_token"]))
        assert len(token) >= 32

    def test_out_of_scope_organization_is_404(self, portal, orgs):
        resp = portal.client.post(
            "/api/v1/auth/invite",
            json={"organizationId": orgs["outside"]},
            headers=bearer(orgs["accountant_token"]),
        )
        assert resp.status_code == 404

    def test_client_cannot_invite(self, portal, orgs):
        _, token = portal.create_user(["client"])
        resp = portal.client.post(
            "/api/v1/auth/invite", json={"organizationId": orgs["inside"]}, headers=bearer(token)
        )
        assert resp.status_code == 403


class TestInviteInfo:
    def test_valid(self, portal, orgs):
        token = _invite(portal, orgs["inside"])
        body = portal.client.get(f"/api/v1/auth/invite-info/{token}").json()
        assert body == {
            "valid": True,
            "organizationId": orgs["inside"],
            "organizationName": "Inside LLC",
            "reason": None,
        }

    def test_not_found(self, portal):
        body = portal.client.get("/api/v1/auth/invite-info/no-such-token").json()
        assert body["valid"] is False
        assert body["reason"] == "not_found"

    def test_used(self, portal, orgs):
        token = _invite(portal, orgs["inside"])
        assert _register(portal, token).status_code == 201
        body = portal.client.get(f"/api/v1/auth/invite-info/{token}").json()
        assert (body["valid"], body["reason"]) == (False, "used")

    def test_expired(self, portal, orgs):
        portal.user_store.create_invite(
            InviteToken(
                token="expired-invite-token",
                organization_id=orgs["inside"],
                created_by_id=portal.admin_id,
                expires_at=utcnow() - timedelta(hours=1),
            )
        )
        body = portal.client.get("/api/v1/auth/invite-info/expired-invite-token").json()
        assert (body["valid"], body["reason"]) == (False, "expired")
        assert _register(portal, "expired-invite-token").status_code == 400


class TestRegister:
    def test_register_signs_in_as_client_member(self, portal, orgs):
        token = _invite(portal, orgs["inside"])
        email = unique_email("newclient")

        resp = _register(portal, token, email=email)

        assert resp.status_code == 201, resp.text
        body = resp.json()
        assert body["accessToken"]
        assert body["user"]["roles"] == ["client"]
        assert "refreshToken" not in body
        assert resp.headers["cache-control"] == "no-store"
        assert any(h.startswith(f"{REFRESH_COOKIE}=") for h in resp.headers.get_list("set-cookie"))

        uid = body["user"]["id"]
        members = portal.tenancy_store.list_organization_members(orgs["inside"])
        assert uid in [m.user_id for m in members]
        assert portal.user_store.get_invite(token).used_at is not None

        own = portal.client.get(
            f"/api/v1/organizations/{orgs['inside']}", headers=bearer(body["accessToken"])
        )
        assert own.status_code == 200

    def test_duplicate_email_leaves_invite_unused(self, portal, orgs):
        taken = unique_email("taken")
        portal.create_user(["client"], email=taken)
        token = _invite(portal, orgs["inside"])

        resp = _register(portal, token, email=taken)

        assert resp.status_code == 409, resp.text
        assert portal.user_store.get_invite(token).used_at is None
        assert _register(portal, token).status_code == 201

    def test_invite_is_single_use(self, portal, orgs):
        token = _invite(portal, orgs["inside"])
        assert _register(portal, token).status_code == 201
        second_email = unique_email("second")
        resp = _register(portal, token, email=second_email)
        assert resp.status_code == 400
        assert portal.user_store.get_by_email(second_email) is None

    def test_short_password_is_400(self, portal, orgs):
        token = _invite(portal, orgs["inside"])
        assert _register(portal, token, password="short").status_code == 400
        assert portal.user_store.get_invite(token).used_at is None

    def test_password_over_72_bytes_is_400(self, portal, orgs):
        token = _invite(portal, orgs["inside"])
        # 40 characters, 80 bytes in UTF-8.
        resp = _register(portal, token, password="é" * 40)
        assert resp.status_code == 400, resp.text
        assert "é" not in resp.text
        assert portal.user_store.get_invite(token).used_at is None


class TestAcceptInvite:
    def test_existing_user_joins_organization(self, portal, orgs):
        uid, token = portal.create_user(["accountant"])
        invite = _invite(portal, orgs["outside"])

        resp = portal.client.post(
            "/api/v1/auth/accept-invite", json={"inviteToken": invite}, headers=bearer(token)
        )

        assert resp.status_code == 200, resp.text
        assert "client" in portal.user_store.get_role_names(uid)
        assert uid in [m.user_id for m in portal.tenancy_store.list_organization_members(orgs["outside"])]
        assert portal.user_store.get_invite(invite).used_at is not None

    def test_already_member_is_409_and_invite_kept(self, portal, orgs):
        token = _invite(portal, orgs["inside"])
        registered = _register(portal, token).json()
        second = _invite(portal, orgs["inside"])

        resp = portal.client.post(
            "/api/v1/auth/accept-invite",
            json={"inviteToken": second},
            headers=bearer(registered["accessToken"]),
        )

        assert resp.status_code == 409
        assert portal.user_store.get_invite(second).used_at is None

    def test_requires_authentication(self, portal, orgs):
        invite = _invite(portal, orgs["inside"])
        resp = portal.client.post("/api/v1/auth/accept-invite", json={"inviteToken": invite})
        assert resp.status_code == 401
