"""
audit/redact.py -- Read-side redaction of sensitive values in audit details.

SENSITIVE_KEY_PATTERNS is the one table of sensitive key fragments. A key
matches when any fragment occurs in it, case-insensitively ("newPassword",
"refresh_token", "clientSecret" and "loginHint" all match). Matching keys
keep their place in the structure and their value becomes REDACTION_MASK,
whatever it was (scalar, object, or array).

redact() returns a new structure and never mutates its input. It is applied
when entries are served back to an admin; stored rows are untouched.

Properties relied on by callers and tests:
  redact(redact(x)) == redact(x)
  non-matching leaves are returned unchanged
"""

from __future__ import annotations

import re
from typing import Any

SENSITIVE_KEY_PATTERNS: tuple[str, ...] = ("password", "token", "refresh", "secret", "login")

REDACTION_MASK = "***"

_SENSITIVE_KEY_RE = re.compile("|".join(re.escape(p) for p in SENSITIVE_KEY_PATTERNS), re.IGNORECASE)


def is_sensitive_key(key: str) -> bool:
    return _SENSITIVE_KEY_RE.search(key) is not None


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTION_MASK if is_sensitive_key(str(k)) else redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value
