"""
auth/credentials.py -- Password and OAuth sign-in.

Order of checks for a password login:
  1. demo credential pair -> in-memory admin profile, demo mode, no backend
     call and no rate-limit accounting
  2. client-side rate limit ("login")
  3. auth service credential check; failure records a rate-limit failure
  4. profile resolution, last-login stamp, session state update

User-facing messages are deliberately generic: the same text for an unknown
email, a wrong password and a backend failure.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Collection

from auth.profiles import ProfileResolver
from auth.rate_limit import RateLimiter
from auth.state import SessionState
from backend.base import AuthAPI, ErrorKind
from core.models import ROLE_ADMIN, AuthResponse, UserProfile, now_iso

logger = logging.getLogger("clinicdesk.auth.credentials")

INVALID_CREDENTIALS = "Invalid email or password"
TOO_MANY_ATTEMPTS = "Too many attempts. Please try again later."
OAUTH_FAILED = "Sign-in with this provider failed"

DEMO_PROFILE_ID = "demo-admin"


class CredentialValidator:
    def __init__(
        self,
        auth: AuthAPI,
        resolver: ProfileResolver,
        limiter: RateLimiter,
        state: SessionState,
        demo_credentials: tuple[str, str] | None = None,
        oauth_providers: Collection[str] = (),
    ) -> None:
        self._auth = auth
        self._resolver = resolver
        self._limiter = limiter
        self._state = state
        self._demo = demo_credentials
        self._oauth_providers = {p.lower() for p in oauth_providers}

    # ------------------------------------------------------------------
    # Demo mode
    # ------------------------------------------------------------------

    def is_demo(self, email: str, password: str) -> bool:
        if self._demo is None:
            return False
        demo_email, demo_password = self._demo
        return email.strip().lower() == demo_email.lower() and hmac.compare_digest(
            password.encode("utf-8"), demo_password.encode("utf-8")
        )

    def _enter_demo(self, email: str) -> UserProfile:
        profile = UserProfile(
            id=DEMO_PROFILE_ID,
            email=email.strip().lower(),
            name="Demo Administrator",
            role=ROLE_ADMIN,
            created_at=now_iso(),
            last_login_at=now_iso(),
            email_verified=True,
        )
        self._state.enter_demo(profile)
        logger.info("Demo session started")
        return profile

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str, client_id: str) -> UserProfile | None:
        if self.is_demo(email, password):
            return self._enter_demo(email)

        if not self._limiter.check(client_id, "login"):
            self._state.set_error(TOO_MANY_ATTEMPTS)
            return None

        result = await self._auth.sign_in_with_password(email.strip(), password)
        if not result.ok:
            if result.error.kind is not ErrorKind.NETWORK:
                self._limiter.record_failure(client_id, "login")
            logger.info("Password sign-in rejected: %s", result.error)
            self._state.set_error(INVALID_CREDENTIALS)
            return None
        return await self._finish(result.data, client_id, "login")

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def login_with_oauth(self, provider: str, redirect_to: str, client_id: str) -> str | None:
        """Return the provider redirect URL, or None when sign-in cannot start."""
        provider = provider.lower()
        if provider not in self._oauth_providers:
            self._state.set_error(OAUTH_FAILED)
            return None
        if not self._limiter.check(client_id, "oauth"):
            self._state.set_error(TOO_MANY_ATTEMPTS)
            return None
        result = await self._auth.sign_in_with_oauth(provider, redirect_to)
        if not result.ok:
            self._limiter.record_failure(client_id, "oauth")
            logger.warning("OAuth start failed for %s: %s", provider, result.error)
            self._state.set_error(OAUTH_FAILED)
            return None
        return result.data

    async def complete_oauth(self, code: str, client_id: str) -> UserProfile | None:
        result = await self._auth.exchange_code_for_session(code)
        if not result.ok:
            self._limiter.record_failure(client_id, "oauth")
            logger.warning("OAuth code exchange failed: %s", result.error)
            self._state.set_error(OAUTH_FAILED)
            return None
        return await self._finish(result.data, client_id, "oauth")

    # ------------------------------------------------------------------

    async def _finish(self, response: AuthResponse, client_id: str, action: str) -> UserProfile | None:
        identity = response.identity
        profile = await self._resolver.resolve(identity.id, identity=identity)
        if profile is None:
            self._limiter.record_failure(client_id, action)
            self._state.set_error(INVALID_CREDENTIALS if action == "login" else OAUTH_FAILED)
            return None
        profile = await self._resolver.touch_last_login(profile)
        self._state.authenticate(profile, response.session)
        logger.info("Signed in %s (%s)", profile.email, profile.role)
        return profile
