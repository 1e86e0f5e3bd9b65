"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted with SlowAPIMiddleware) and by
api/routes/v1/oauth.py (per-route limits via @limiter.limit()).

A single shared instance keeps one in-memory counter store; separate
instances per module would each count on their own and never trigger.
Limits are keyed by client address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
