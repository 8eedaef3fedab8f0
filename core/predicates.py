"""
core/predicates.py -- Typed, conjunction-only query predicates.

A Predicate wraps one SQLAlchemy boolean clause. The only way to combine two
predicates is `&` (or all_of()), which always produces an AND. There is no
`|`: a caller filter can narrow a scope predicate but can never widen it.

Stores take the scope predicate as a required positional argument on every
list and single-row read, so an unscoped query cannot be written by leaving
an argument out.

Layer rule: core/ is the kernel. No imports from the rest of the project.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import and_, false, true
from sqlalchemy.sql.elements import ColumnElement


@dataclass(frozen=True)
class Predicate:
    clause: ColumnElement[bool]

    def __and__(self, other: Predicate) -> Predicate:
        if not isinstance(other, Predicate):
            return NotImplemented
        return Predicate(and_(self.clause, other.clause))


MATCH_ALL = Predicate(true())
MATCH_NONE = Predicate(false())


def all_of(*predicates: Predicate) -> Predicate:
    """Conjunction of every given predicate. Empty input matches everything."""
    result = MATCH_ALL
    for p in predicates:
        result = result & p
    return result
