"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

A single shared instance means all routes share the same in-memory counter
store. Limits are read from Settings at request time, so tests and
deployments can tune them through the environment.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def register_limit() -> str:
    return get_settings().register_rate_limit
