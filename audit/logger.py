"""
audit/logger.py -- Best-effort audit writer.

AuditLogger.log() is called synchronously as the last step of a successful
mutation, after the business write has committed. It never raises: a
failed insert is written to the "portal.audit" operational log with its
traceback and log() returns False. The triggering request still succeeds
and the business write is not rolled back.
"""

from __future__ import annotations

import logging
from typing import Any

from audit.models import AuditEntry
from audit.store import AuditStore

logger = logging.getLogger("portal.audit")


class AuditLogger:
    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def log(
        self,
        action: str,
        *,
        actor_id: int | None = None,
        entity: str | None = None,
        entity_id: Any = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> bool:
        entry = AuditEntry(
            action=action,
            user_id=actor_id,
            entity=entity,
            entity_id=str(entity_id) if entity_id is not None else None,
            details=details or {},
            ip_address=ip_address,
        )
        try:
            self.store.record(entry)
        except Exception:
            logger.exception("Audit write failed for action=%s entity=%s id=%s", action, entity, entity_id)
            return False
        return True
