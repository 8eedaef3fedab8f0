"""
api/limiter.py -- Shared slowapi rate limiter for the credential endpoints.

One Limiter instance is shared by api/main.py (mounted through
SlowAPIMiddleware) and api/routes/v1/auth.py (per-route @limiter.limit()).
Separate instances would each keep their own counters and never trigger.

Counters are keyed by client IP and held in process memory, so limits are
per worker. Tests call limiter.reset() between cases.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def credential_rate_limit() -> str:
    """Limit string for login and registration, e.g. "10 per 15 minutes"."""
    return get_settings().login_rate_limit
