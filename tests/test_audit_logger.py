"""
tests/test_audit_logger.py -- Best-effort audit writes.

Covers:
  - log() appends one row with the entity id stored as text
  - a failing store is logged on "portal.audit" and log() returns False
  - a failing audit write does not fail or roll back the HTTP mutation
  - the store has no update or delete surface
"""

from __future__ import annotations

import logging

from audit.logger import AuditLogger
from audit.models import AuditQuery
from audit.store import AuditStore
from core.predicates import MATCH_ALL


class _BrokenStore:
    def record(self, entry, created_at=None):
        raise RuntimeError("disk full")


class TestAuditLogger:
    def test_log_appends_row(self):
        store = AuditStore("sqlite:///:memory:")
        try:
            ok = AuditLogger(store).log(
                "section_created", actor_id=7, entity="section", entity_id=12, details={"number": 3}, ip_address="::1"
            )
            assert ok is True
            entries, total = store.list_entries(AuditQuery())
            assert total == 1
            entry = entries[0]
            assert (entry.action, entry.user_id) == ("section_created", 7)
            assert (entry.entity, entry.entity_id) == ("section", "12")
            assert entry.details == {"number": 3}
            assert entry.ip_address == "::1"
            assert entry.created_at is not None
        finally:
            store.close()

    def test_missing_details_stored_as_empty_object(self):
        store = AuditStore("sqlite:///:memory:")
        try:
            AuditLogger(store).log("logout", actor_id=1)
            entries, _ = store.list_entries(AuditQuery())
            assert entries[0].details == {}
            assert entries[0].entity_id is None
        finally:
            store.close()

    def test_failure_is_swallowed_and_logged(self, caplog):
        with caplog.at_level(logging.ERROR, logger="portal.audit"):
            ok = AuditLogger(_BrokenStore()).log("user_updated", actor_id=1, entity="user", entity_id=2)
        assert ok is False
        assert any("user_updated" in r.getMessage() for r in caplog.records)
        assert any(r.exc_info for r in caplog.records)

    def test_store_is_append_only(self):
        public = {name for name in dir(AuditStore) if not name.startswith("_")}
        assert public == {"record", "list_entries", "count", "close"}


def test_broken_audit_does_not_break_mutation(portal):
    working = portal.client.app.state.audit
    portal.client.app.state.audit = AuditLogger(_BrokenStore())
    try:
        resp = portal.client.post(
            "/api/v1/sections", json={"number": 4242, "name": "Still Saved"}, headers=portal.admin_headers()
        )
    finally:
        portal.client.app.state.audit = working

    assert resp.status_code == 201, resp.text
    section = portal.tenancy_store.get_section(resp.json()["id"], MATCH_ALL)
    assert section is not None
    assert section.name == "Still Saved"
