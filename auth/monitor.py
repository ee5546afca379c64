"""
auth/monitor.py -- Keeps SessionState in step with the auth service.

Subscribes once to the service's session-change stream:

  signed_out / no session  -> clear state and profile cache
  event with a session     -> resolve the profile; success updates state and
                              cache, failure clears both

load_initial() runs at start-up (and again when a stale state needs
reconciling). A network-class failure keeps the cached profile, marked stale,
so a flaky connection does not log the user out; any other failure means the
user is genuinely signed out.
"""

from __future__ import annotations

import logging

from auth.profiles import ProfileResolver
from auth.state import SessionState
from backend.base import AuthAPI, AuthEvent, ErrorKind, Subscription
from core.models import Session, UserProfile

logger = logging.getLogger("clinicdesk.auth.monitor")


class SessionMonitor:
    def __init__(self, auth: AuthAPI, resolver: ProfileResolver, state: SessionState) -> None:
        self._auth = auth
        self._resolver = resolver
        self._state = state
        self._subscription: Subscription | None = None

    @property
    def running(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start(self) -> UserProfile | None:
        if self._subscription is None:
            self._subscription = self._auth.on_auth_state_change(self.handle_event)
        return await self.load_initial()

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def load_initial(self) -> UserProfile | None:
        if self._state.has_cached_demo():
            profile = self._state.restore_cached()
            logger.info("Restored demo session")
            return profile

        result = await self._auth.get_session()
        if not result.ok:
            match result.error.kind:
                case ErrorKind.NETWORK:
                    profile = self._state.restore_cached()
                    if profile is None:
                        self._state.clear()
                    else:
                        logger.warning("Auth service unreachable; using cached profile for %s", profile.email)
                    return profile
                case _:
                    logger.info("No valid session on load (%s)", result.error)
                    self._state.clear()
                    return None
        if result.data is None:
            self._state.clear()
            return None
        await self.handle_event(AuthEvent.INITIAL, result.data)
        return self._state.profile

    async def handle_event(self, event: AuthEvent, session: Session | None) -> None:
        logger.debug("Auth event %s", event.value)
        if event is AuthEvent.SIGNED_OUT or session is None:
            self._state.clear()
            return
        profile = await self._resolver.resolve(session.identity.id, identity=session.identity)
        if profile is None:
            self._state.clear()
            return
        self._state.authenticate(profile, session)
