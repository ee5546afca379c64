"""
auth/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted as middleware), api/routes/v1/auth.py and
web/routes.py (per-route limits via @limiter.limit()). It lives in auth/ so
both route layers can reach it without importing each other.

This is the server-side, per-IP limit. The facade's own RateLimiter keys on
a user-agent fingerprint, which a client can change at will, so every sign-in
route carries both.

One shared instance means one shared in-memory counter store; separate
instances per module would each count in isolation and never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
