"""
auth/binding.py -- Ties the facade's signed-in session to one browser.

The facade holds one operator session per process. Without a binding, any
visitor who reaches the server would ride on it. After a successful sign-in
the route handler asks for a binding:

  1. a random binding id is stored in SessionState (and mirrored to the local
     cache, so a restart keeps the same browser signed in)
  2. a signed JWT carrying that id and the profile id is written as an
     httpOnly cookie

The gates (web _require_auth, api get_current_profile, /auth/session) accept
a request only when its cookie verifies AND names the current binding id and
profile. A new sign-in replaces the id, so the previous browser loses access;
sign-out clears it.

Layer rule: no imports from api/ or web/. Cookie helpers take any
Starlette-compatible response object.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.state import SessionState

logger = logging.getLogger("clinicdesk.auth.binding")

BINDING_COOKIE = "clinic_session"

_ALGORITHM = "HS256"
_TOKEN_TYPE = "browser"


class BrowserBinding:
    def __init__(self, state: SessionState, secret_key: str, max_age: int, secure: bool = False) -> None:
        self._state = state
        self._secret = secret_key
        self.max_age = max_age
        self.secure = secure

    def issue(self) -> str | None:
        """Bind the signed-in session to a new browser; None when signed out."""
        profile = self._state.profile
        if profile is None:
            return None
        binding_id = secrets.token_urlsafe(24)
        self._state.bind(binding_id)
        expire = datetime.now(timezone.utc) + timedelta(seconds=self.max_age)
        payload = {"sub": profile.id, "bid": binding_id, "typ": _TOKEN_TYPE, "exp": expire}
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def owns(self, token: str | None) -> bool:
        """True when token is the live binding of the current profile."""
        profile = self._state.profile
        current = self._state.binding
        if not token or profile is None or current is None:
            return False
        try:
            claims = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except JWTError:
            logger.debug("Rejected unverifiable browser binding")
            return False
        if claims.get("typ") != _TOKEN_TYPE or claims.get("sub") != profile.id:
            return False
        return hmac.compare_digest(str(claims.get("bid", "")), current)

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def set_cookie(self, response, token: str) -> None:
        """Write the binding as an httpOnly, SameSite=Lax cookie.

        secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
        """
        response.set_cookie(
            BINDING_COOKIE,
            value=token,
            httponly=True,
            samesite="lax",
            secure=self.secure,
            max_age=self.max_age,
        )

    @staticmethod
    def clear_cookie(response) -> None:
        response.delete_cookie(BINDING_COOKIE)
