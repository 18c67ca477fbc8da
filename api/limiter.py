"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and api/routes/v1/auth.py
(per-route limits with @limiter.limit()). A single shared instance keeps one
in-memory counter store; separate instances per module would each count on
their own and limits would never trigger.

The login limit string comes from LOGIN_RATE_LIMIT so tests and deployments
can tune it without code changes.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    return get_settings().login_rate_limit
