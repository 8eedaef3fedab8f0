"""
api/tasks.py -- Background work scheduled by route handlers.

Handlers call these after a committed mutation. Each helper dispatches
through app.state.dispatcher and returns immediately; see core/tasks.py for
the failure policy.
"""

from __future__ import annotations

from fastapi import Request


def schedule_section_stats(request: Request, *section_ids: int | None) -> None:
    """Recompute the statistics snapshot of every affected section."""
    store = request.app.state.tenancy_store
    for section_id in {sid for sid in section_ids if sid is not None}:
        request.app.state.dispatcher.dispatch("recompute_section_stats", store.recompute_section_stats, section_id)
