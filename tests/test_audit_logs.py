"""
tests/test_audit_logs.py -- GET /api/v1/audit-logs and the audit store read path.

Covers:
  - inclusive UTC day range (2026-01-15 example) including both boundaries
    and the final microseconds of the last day
  - entity / userId / search filters combine with AND
  - newest first, page/limit clamping, total independent of the page
  - details redacted on the way out, stored rows untouched
  - actor email resolved at read time; null after the actor is deleted
  - invalid dates are 400
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from audit.models import AuditEntry, AuditQuery
from auth.models import User
from auth.tokens import hash_password
from conftest import bearer, unique_email

URL = "/api/v1/audit-logs"


def _at(*parts) -> datetime:
    return datetime(*parts, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def seeded(api_client):
    store = api_client.audit_store
    actor_email = unique_email("actor")
    actor_id = api_client.user_store.create_user(User(email=actor_email, password_hash=hash_password("pw-123456")))
    rows = {
        "before": store.record(
            AuditEntry(action="organization_updated", user_id=actor_id, entity="organization", entity_id="1"),
            created_at=_at(2026, 1, 14, 23, 59, 59, 999999),
        ),
        "start": store.record(
            AuditEntry(action="organization_created", user_id=actor_id, entity="organization", entity_id="1"),
            created_at=_at(2026, 1, 15, 0, 0, 0),
        ),
        "midday_section": store.record(
            AuditEntry(action="section_created", user_id=actor_id, entity="section", entity_id="9"),
            created_at=_at(2026, 1, 15, 12, 0, 0),
        ),
        "end": store.record(
            AuditEntry(
                action="organization_archived",
                user_id=api_client.admin_id,
                entity="organization",
                entity_id="2",
                ip_address="10.1.2.3",
                details={"name": "Acme", "password": "leaked", "nested": {"refreshToken": "r"}},
            ),
            created_at=_at(2026, 1, 15, 23, 59, 59, 999000),
        ),
        "after": store.record(
            AuditEntry(action="organization_updated", user_id=actor_id, entity="organization", entity_id="3"),
            created_at=_at(2026, 1, 16, 0, 0, 0),
        ),
    }
    return {"rows": rows, "actor_id": actor_id, "actor_email": actor_email}


def _get(portal, **params):
    resp = portal.client.get(URL, params=params, headers=portal.admin_headers())
    assert resp.status_code == 200, f"Expected 200: {resp.text}"
    return resp.json()


class TestDateRange:
    def test_single_day_is_inclusive_utc(self, portal, seeded):
        body = _get(portal, entity="organization", **{"from": "2026-01-15", "to": "2026-01-15"})
        ids = [e["id"] for e in body["data"]]
        assert ids == [seeded["rows"]["end"], seeded["rows"]["start"]]
        assert body["total"] == 2
        for entry in body["data"]:
            ts = datetime.fromisoformat(entry["createdAt"].replace("Z", "+00:00"))
            assert _at(2026, 1, 15) <= ts < _at(2026, 1, 16)

    def test_open_ended_range(self, portal, seeded):
        body = _get(portal, **{"from": "2026-01-16"})
        assert seeded["rows"]["after"] in [e["id"] for e in body["data"]]
        assert seeded["rows"]["end"] not in [e["id"] for e in body["data"]]

    def test_query_bounds(self):
        query = AuditQuery(date_from=_at(2026, 1, 15).date(), date_to=_at(2026, 1, 15).date())
        assert query.lower_bound() == _at(2026, 1, 15, 0, 0, 0)
        assert query.upper_bound() == _at(2026, 1, 16, 0, 0, 0)

    def test_last_microseconds_of_day_belong_to_that_day(self, portal):
        store = portal.audit_store
        row_id = store.record(
            AuditEntry(action="late_write", entity="late_day"),
            created_at=_at(2025, 3, 10, 23, 59, 59, 999500),
        )

        same_day, _ = store.list_entries(
            AuditQuery(entity="late_day", date_from=_at(2025, 3, 10).date(), date_to=_at(2025, 3, 10).date())
        )
        next_day, _ = store.list_entries(
            AuditQuery(entity="late_day", date_from=_at(2025, 3, 11).date(), date_to=_at(2025, 3, 11).date())
        )

        assert [e.id for e in same_day] == [row_id]
        assert next_day == []

    def test_invalid_date_is_400(self, portal):
        resp = portal.client.get(URL, params={"from": "15/01/2026"}, headers=portal.admin_headers())
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_reversed_range_is_400(self, portal):
        params = {"from": "2026-01-16", "to": "2026-01-15"}
        resp = portal.client.get(URL, params=params, headers=portal.admin_headers())
        assert resp.status_code == 400


class TestFilters:
    def test_user_filter(self, portal, seeded):
        body = _get(portal, userId=seeded["actor_id"], **{"from": "2026-01-14", "to": "2026-01-16"})
        assert body["total"] == 4
        assert all(e["userId"] == seeded["actor_id"] for e in body["data"])

    def test_search_matches_action_entity_id_and_ip(self, portal, seeded):
        assert [e["id"] for e in _get(portal, search="10.1.2")["data"]] == [seeded["rows"]["end"]]
        assert seeded["rows"]["midday_section"] in [e["id"] for e in _get(portal, search="SECTION_CREATED")["data"]]

    def test_filters_are_anded(self, portal, seeded):
        body = _get(portal, entity="section", search="organization")
        assert body["total"] == 0

    def test_newest_first(self, portal, seeded):
        body = _get(portal, **{"from": "2026-01-14", "to": "2026-01-16"})
        stamps = [e["createdAt"] for e in body["data"]]
        assert stamps == sorted(stamps, reverse=True)


class TestPaging:
    def test_limit_is_clamped(self, portal, seeded):
        assert _get(portal, limit=0)["limit"] == 1
        assert _get(portal, limit=1000)["limit"] == 100
        assert _get(portal, page=-3)["page"] == 1

    def test_total_is_independent_of_page(self, portal, seeded):
        window = {"from": "2026-01-14", "to": "2026-01-16"}
        first = _get(portal, limit=2, page=1, **window)
        third = _get(portal, limit=2, page=3, **window)
        assert first["total"] == third["total"] == 5
        assert len(first["data"]) == 2
        assert len(third["data"]) == 1


class TestPresentation:
    def test_details_are_redacted_but_stored_rows_are_not(self, portal, seeded):
        body = _get(portal, search="10.1.2.3")
        details = body["data"][0]["details"]
        assert details == {"name": "Acme", "password": "***", "nested": {"refreshToken": "***"}}

        stored, _ = portal.audit_store.list_entries(AuditQuery(search="10.1.2.3"))
        assert stored[0].details["password"] == "leaked"

    def test_actor_email_resolved_and_survives_deletion(self, portal, seeded):
        body = _get(portal, userId=seeded["actor_id"], limit=1)
        assert body["data"][0]["userEmail"] == seeded["actor_email"]

        portal.user_store.delete_user(seeded["actor_id"])

        body = _get(portal, userId=seeded["actor_id"])
        assert body["total"] == 4
        assert all(e["userEmail"] is None for e in body["data"])

    def test_non_admin_is_forbidden(self, portal):
        _, token = portal.create_user(["accountant"])
        assert portal.client.get(URL, headers=bearer(token)).status_code == 403
