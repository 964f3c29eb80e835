"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to apply the per-IP login limit with @limiter.limit()). A single shared
instance means all routes share one in-memory counter store.

This is a coarse request-rate cap. Failed-password lockout is a separate
concern handled by auth.guard.LoginGuard.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for POST /auth/login, read lazily so tests can override it."""
    return get_settings().login_rate_limit
