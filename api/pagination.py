"""
api/pagination.py -- Shared page/limit query parameters.

Out-of-range values are clamped rather than rejected: page below 1 becomes 1,
limit is forced into [1, MAX_LIMIT]. Non-integer values still fail
validation (400).
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Query

DEFAULT_LIMIT = 50
MAX_LIMIT = 100


@dataclass(frozen=True)
class Page:
    page: int
    limit: int


def get_page(page: int = Query(1), limit: int = Query(DEFAULT_LIMIT)) -> Page:
    return Page(page=max(1, page), limit=min(MAX_LIMIT, max(1, limit)))
