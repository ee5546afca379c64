"""
auth/state.py -- Observable session state shared by the auth components.

One SessionState instance is created per facade and handed to every component
through its constructor. Views subscribe to it instead of reading ambient
global context.

The state also owns the local cache entries that mirror it:

  clinic.currentUser -- last-known-good profile (never authoritative)
  clinic.demoMode    -- set while a demo session is active
  clinic.binding     -- id of the browser the session is bound to (auth/binding.py)

Synthesized profiles are held in memory only; they never reach the cache.

After close() every mutator is a no-op, so an operation that completes after
its owner was torn down cannot resurrect a session.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from cache.store import LocalCache
from core.models import Session, UserProfile

logger = logging.getLogger("clinicdesk.auth.state")

PROFILE_KEY = "clinic.currentUser"
DEMO_KEY = "clinic.demoMode"
BINDING_KEY = "clinic.binding"

StateListener = Callable[["SessionState"], None]


class SessionState:
    def __init__(self, cache: LocalCache | None = None) -> None:
        self._cache = cache
        self._listeners: list[StateListener] = []
        self._closed = False
        self.profile: UserProfile | None = None
        self.session: Session | None = None
        self.demo_mode = False
        # True while the profile comes from the local cache and has not been
        # reconciled with the server yet.
        self.stale = False
        # Last user-facing error message (generic by design).
        self.error: str | None = None
        self.binding: str | None = cache.get(BINDING_KEY) if cache is not None else None

    @property
    def is_authenticated(self) -> bool:
        return self.profile is not None

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Session state listener failed")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def authenticate(self, profile: UserProfile, session: Session | None = None) -> None:
        if self._closed:
            return
        self.profile = profile
        if session is not None:
            self.session = session
        self.stale = False
        self.error = None
        if self._cache is not None:
            if profile.synthesized:
                self._cache.delete(PROFILE_KEY)
            else:
                self._cache.set(PROFILE_KEY, profile.to_dict())
        self._notify()

    def enter_demo(self, profile: UserProfile) -> None:
        if self._closed:
            return
        self.profile = profile
        self.session = None
        self.demo_mode = True
        self.stale = False
        self.error = None
        if self._cache is not None:
            self._cache.set(PROFILE_KEY, profile.to_dict())
            self._cache.set(DEMO_KEY, True)
        self._notify()

    def restore_cached(self) -> UserProfile | None:
        """Load the cached profile into memory.

        A cached demo session comes back as a demo session. Anything else is
        marked stale until the server confirms it. Returns None (and leaves
        the state alone) when nothing usable is cached.
        """
        if self._closed or self._cache is None:
            return None
        data = self._cache.get(PROFILE_KEY)
        if not data:
            return None
        try:
            profile = UserProfile.from_dict(data)
        except TypeError:
            logger.warning("Discarding unreadable cached profile")
            self._cache.delete(PROFILE_KEY)
            return None
        self.profile = profile
        self.demo_mode = bool(self._cache.get(DEMO_KEY, False))
        self.stale = not self.demo_mode
        self._notify()
        return profile

    def has_cached_demo(self) -> bool:
        return self._cache is not None and bool(self._cache.get(DEMO_KEY, False))

    def mark_stale(self) -> None:
        if self._closed or self.profile is None:
            return
        self.stale = True
        self._notify()

    def bind(self, binding_id: str) -> None:
        if self._closed or self.profile is None:
            return
        self.binding = binding_id
        if self._cache is not None:
            self._cache.set(BINDING_KEY, binding_id)

    def set_error(self, message: str | None) -> None:
        if self._closed:
            return
        self.error = message
        self._notify()

    def clear(self) -> None:
        if self._closed:
            return
        self.profile = None
        self.session = None
        self.demo_mode = False
        self.stale = False
        self.binding = None
        if self._cache is not None:
            self._cache.delete(PROFILE_KEY)
            self._cache.delete(DEMO_KEY)
            self._cache.delete(BINDING_KEY)
        self._notify()

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()
