"""
auth/rate_limit.py -- Client-side attempt counter for login, register and OAuth.

Fixed window per (identifier, action): the first attempt opens a window, at
most `max_attempts` calls are allowed inside it, and the first call after the
window has elapsed opens a new one. Every allowed call to check() is counted
and persisted to the LocalCache whether or not the guarded action later
succeeds. A denied call is not counted and never moves the window start.

Limitation: the identifier is a hashed user agent plus a 15-minute time
bucket, not a network address. Anyone can change their user agent, and a new
bucket yields a new identifier. This throttle exists to slow accidental
hammering from the dashboard itself and is NOT a security control. Brute-force
protection is enforced server-side (auth/limiter.py, per client IP).

Failure mode: any error while reading or writing counter state fails open
(check() returns True) and is logged.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable

from cache.store import LocalCache
from core.models import RateLimitRecord

logger = logging.getLogger("clinicdesk.auth.rate_limit")

DEFAULT_WINDOW_SECONDS = 15 * 60
DEFAULT_LIMITS = {"login": 5, "register": 3, "oauth": 3}
_KEY_PREFIX = "clinic.rateLimit"


def client_fingerprint(user_agent: str | None, now: float | None = None, bucket_seconds: int = 15 * 60) -> str:
    """Coarse client identifier: SHA-256 of the user agent and a time bucket."""
    bucket = int((now if now is not None else time.time()) // bucket_seconds)
    digest = hashlib.sha256(f"{user_agent or 'unknown'}|{bucket}".encode("utf-8")).hexdigest()
    return digest[:16]


class RateLimiter:
    def __init__(
        self,
        cache: LocalCache,
        limits: dict[str, int] | None = None,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cache = cache
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self._window = window_seconds
        self._clock = clock

    @staticmethod
    def _key(identifier: str, action: str) -> str:
        return f"{_KEY_PREFIX}.{action}.{identifier}"

    def _load(self, identifier: str, action: str) -> RateLimitRecord | None:
        data = self._cache.get(self._key(identifier, action))
        return RateLimitRecord(**data) if data else None

    def _save(self, record: RateLimitRecord) -> None:
        self._cache.set(self._key(record.identifier, record.action), record.to_dict(), ttl=self._window * 2)

    def max_attempts(self, action: str) -> int:
        return self._limits.get(action, DEFAULT_LIMITS["login"])

    def check(self, identifier: str, action: str) -> bool:
        """Count one attempt; return False once the window's budget is used up."""
        try:
            now = self._clock()
            record = self._load(identifier, action)
            if record is None or now - record.window_start > self._window:
                self._save(RateLimitRecord(identifier=identifier, action=action, attempts=1, window_start=now))
                return True
            if record.attempts >= self.max_attempts(action):
                logger.info("Rate limit reached for %s (%d attempts)", action, record.attempts)
                return False
            record.attempts += 1
            self._save(record)
            return True
        except Exception:
            logger.warning("Rate limit check failed for %s; allowing", action, exc_info=True)
            return True

    def record_failure(self, identifier: str, action: str) -> None:
        """Note a failed attempt. Diagnostic only; check() already counted it."""
        try:
            record = self._load(identifier, action)
            if record is None:
                return
            record.failures += 1
            self._save(record)
            logger.info("Failed %s attempt %d in current window", action, record.failures)
        except Exception:
            logger.warning("Could not record %s failure", action, exc_info=True)

    def status(self, identifier: str, action: str) -> RateLimitRecord | None:
        try:
            return self._load(identifier, action)
        except Exception:
            logger.warning("Could not read rate limit state for %s", action, exc_info=True)
            return None
