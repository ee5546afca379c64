"""
auth/refresher.py -- Proactive renewal of sessions close to expiry.

validate_session() asks needs_refresh() and calls refresh() when less than
the threshold (default 5 minutes) of lifetime is left.

A refresh the service refuses means the session can no longer be trusted:
the refresher runs the facade's logout. A refresh that fails because the
service is unreachable only marks the state stale.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from auth.profiles import ProfileResolver
from auth.state import SessionState
from backend.base import AuthAPI, ErrorKind
from core.models import Session, utcnow

logger = logging.getLogger("clinicdesk.auth.refresher")

DEFAULT_THRESHOLD = timedelta(minutes=5)


class TokenRefresher:
    def __init__(
        self,
        auth: AuthAPI,
        resolver: ProfileResolver,
        state: SessionState,
        on_failure: Callable[[], Awaitable[None]],
        threshold: timedelta = DEFAULT_THRESHOLD,
    ) -> None:
        self._auth = auth
        self._resolver = resolver
        self._state = state
        self._on_failure = on_failure
        self.threshold = threshold

    def needs_refresh(self, session: Session, now: datetime | None = None) -> bool:
        return session.remaining(now or utcnow()) < self.threshold

    async def refresh(self) -> bool:
        result = await self._auth.refresh_session()
        if not result.ok:
            if result.error.kind is ErrorKind.NETWORK:
                logger.warning("Session refresh deferred, auth service unreachable: %s", result.error)
                self._state.mark_stale()
                return False
            logger.info("Session refresh refused (%s); logging out", result.error)
            await self._on_failure()
            return False

        session = result.data
        profile = await self._resolver.resolve(session.identity.id, identity=session.identity)
        if profile is None:
            logger.warning("Profile no longer resolves after refresh; logging out")
            await self._on_failure()
            return False
        self._state.authenticate(profile, session)
        return True
