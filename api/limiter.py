"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the routers that
apply per-route limits with @limiter.limit(). A single shared instance keeps
one in-memory counter store for every route.

The login limit is read from LOGIN_RATE_LIMIT at request time. It sits in
front of the credential store's per-account lockout and throttles guessing
across many usernames from one address.

The forgot-password limit (RESET_RATE_LIMIT) caps how many reset mails one
address can trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    return get_settings().login_rate_limit


def reset_rate_limit() -> str:
    return get_settings().reset_rate_limit
