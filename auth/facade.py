"""
auth/facade.py -- The auth surface the rest of the application uses.

AuthFacade composes the rate limiter, credential validator, profile resolver,
session monitor and token refresher around one SessionState. Everything that
can go wrong below is resolved here into a bool / profile-or-None result plus
a generic state.error message; no backend error object reaches the caller.

Lifecycle:
    facade = AuthFacade(backend, cache, settings)
    await facade.start()          # subscribe + initial session load
    ...
    await facade.aclose()         # cancel in-flight calls, unsubscribe

Usage from a view:
    profile = await facade.login(email, password, client_id=fingerprint)
    if profile is None:
        show(facade.state.error)
    facade.binding.set_cookie(response, facade.binding.issue())

    # later requests from that browser
    if await facade.validate_browser(request.cookies.get(BINDING_COOKIE)): ...
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from auth.binding import BrowserBinding
from auth.credentials import TOO_MANY_ATTEMPTS, CredentialValidator
from auth.monitor import SessionMonitor
from auth.profiles import ProfileResolver
from auth.rate_limit import RateLimiter, client_fingerprint
from auth.refresher import TokenRefresher
from auth.scope import TaskScope
from auth.state import SessionState
from backend.base import Backend
from cache.store import LocalCache
from core.config import Settings
from core.models import UserProfile

logger = logging.getLogger("clinicdesk.auth")

REGISTRATION_FAILED = "Registration failed. The email may already be in use."
MIN_PASSWORD_LENGTH = 6


class AuthFacade:
    def __init__(self, backend: Backend, cache: LocalCache, settings: Settings) -> None:
        self.backend = backend
        self.state = SessionState(cache)
        self.binding = BrowserBinding(
            self.state,
            settings.secret_key,
            max_age=settings.browser_session_seconds,
            secure=settings.secure_cookies,
        )
        self._scope = TaskScope()
        self._settle = settings.register_settle_seconds

        self.limiter = RateLimiter(
            cache,
            limits={
                "login": settings.login_max_attempts,
                "register": settings.register_max_attempts,
                "oauth": settings.oauth_max_attempts,
            },
            window_seconds=settings.rate_limit_window_seconds,
        )
        self.resolver = ProfileResolver(backend.auth, backend.tables)
        self.credentials = CredentialValidator(
            backend.auth,
            self.resolver,
            self.limiter,
            self.state,
            demo_credentials=(
                (settings.demo_email, settings.demo_password) if settings.demo_mode_enabled else None
            ),
            oauth_providers=settings.oauth_providers if settings.backend == "remote" else (),
        )
        self.monitor = SessionMonitor(backend.auth, self.resolver, self.state)
        self.refresher = TokenRefresher(
            backend.auth,
            self.resolver,
            self.state,
            on_failure=self._logout,
            threshold=timedelta(seconds=settings.refresh_threshold_seconds),
        )

    @property
    def profile(self) -> UserProfile | None:
        return self.state.profile

    @property
    def is_authenticated(self) -> bool:
        return self.state.is_authenticated

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> UserProfile | None:
        return await self._scope.run(self.monitor.start(), None)

    async def aclose(self) -> None:
        self._scope.close()
        self.monitor.stop()
        self.state.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str, client_id: str | None = None) -> UserProfile | None:
        client_id = client_id or client_fingerprint(None)
        return await self._scope.run(self.credentials.login(email, password, client_id), None)

    async def login_with_oauth(self, provider: str, redirect_to: str, client_id: str | None = None) -> str | None:
        client_id = client_id or client_fingerprint(None)
        return await self._scope.run(self.credentials.login_with_oauth(provider, redirect_to, client_id), None)

    async def complete_oauth(self, code: str, client_id: str | None = None) -> UserProfile | None:
        client_id = client_id or client_fingerprint(None)
        return await self._scope.run(self.credentials.complete_oauth(code, client_id), None)

    async def register(self, email: str, password: str, name: str, client_id: str | None = None) -> bool:
        client_id = client_id or client_fingerprint(None)
        return await self._scope.run(self._register(email, password, name, client_id), False)

    async def logout(self) -> None:
        await self._scope.run(self._logout(), None)

    async def validate_session(self) -> bool:
        return await self._scope.run(self._validate_session(), False)

    async def validate_browser(self, token: str | None) -> bool:
        """validate_session() for a request that presents a browser binding.

        A browser that does not hold the current binding is refused before the
        session is touched, so it cannot trigger a refresh or reconciliation.
        """
        if not self.binding.owns(token):
            return False
        return await self.validate_session()

    # ------------------------------------------------------------------
    # Implementations
    # ------------------------------------------------------------------

    async def _register(self, email: str, password: str, name: str, client_id: str) -> bool:
        if len(password) < MIN_PASSWORD_LENGTH or not name.strip() or "@" not in email:
            self.state.set_error(REGISTRATION_FAILED)
            return False
        if not self.limiter.check(client_id, "register"):
            self.state.set_error(TOO_MANY_ATTEMPTS)
            return False

        created = await self.backend.auth.sign_up(email.strip(), password, {"name": name.strip()})
        if not created.ok:
            self.limiter.record_failure(client_id, "register")
            logger.info("Sign-up rejected: %s", created.error)
            self.state.set_error(REGISTRATION_FAILED)
            return False

        # With a session, SIGNED_IN has already reached the monitor, which
        # created the profile; create_profile() then takes its conflict path
        # and returns that row. Without one (email confirmation pending) no
        # event fires and the row is created here, once the hosted service has
        # had time to accept rows that reference the new identity.
        if self._settle > 0:
            await asyncio.sleep(self._settle)

        profile = await self.resolver.create_profile(created.data.identity, name=name.strip())
        if profile is None:
            logger.warning("Profile creation failed for %s; signing the new identity out", email)
            # Best-effort compensation; the identity itself stays behind.
            await self.backend.auth.sign_out()
            self.state.clear()
            self.state.set_error(REGISTRATION_FAILED)
            return False

        if created.data.session is not None:
            self.state.authenticate(profile, created.data.session)
        logger.info("Registered %s", profile.email)
        return True

    async def _logout(self) -> None:
        if not self.state.demo_mode:
            result = await self.backend.auth.sign_out()
            if not result.ok:
                logger.warning("Sign-out call failed (%s); local session cleared", result.error)
        self.state.clear()

    async def _validate_session(self) -> bool:
        if self.state.demo_mode:
            return self.state.profile is not None
        if self.state.stale:
            await self.monitor.load_initial()
            if self.state.stale:
                # still offline: keep working from the cached profile
                return self.state.profile is not None
        session = self.state.session
        if session is None:
            return False
        if self.refresher.needs_refresh(session):
            return await self.refresher.refresh()
        return self.state.profile is not None
