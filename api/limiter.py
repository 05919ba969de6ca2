"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Requests are keyed by client address. Only POST /auth/login carries a limit
today; token-authenticated routes are not throttled here.

Counters live in Settings.rate_limit_storage_uri. The in-memory default is
per-process: each uvicorn worker counts on its own, so the effective login
limit is multiplied by the worker count unless a shared store is configured.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)
