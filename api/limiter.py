"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware) and api/routes/auth.py
(per-route limits on the credential endpoints via @limiter.limit()).

One shared instance means every route shares the same in-memory counters.
The limit string comes from LOGIN_RATE_LIMIT; tests raise it instead of
disabling the limiter.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
