"""
auth/dependencies.py -- FastAPI Depends() helpers around the AuthFacade.

The facade lives on app.state.auth (created in the api/main.py lifespan).

get_auth()          -- the facade itself
get_client_id()     -- coarse client fingerprint for the client-side limiter
get_binding_token() -- the browser binding cookie, if the request carries one
get_current_profile -- validates the session for this browser; HTTP 401 if not
                       signed in here
require_role(role)  -- dependency factory; HTTP 403 if the role check fails
                       (admin satisfies every role)

Layer rule: no imports from api/ or web/. May import fastapi because this
module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, HTTPException, Request

from auth.binding import BINDING_COOKIE
from auth.facade import AuthFacade
from auth.rate_limit import client_fingerprint
from core.models import UserProfile


def get_auth(request: Request) -> AuthFacade:
    return request.app.state.auth


def get_client_id(request: Request) -> str:
    return client_fingerprint(request.headers.get("user-agent"))


def get_binding_token(request: Request) -> str | None:
    return request.cookies.get(BINDING_COOKIE)


async def get_current_profile(
    auth: AuthFacade = Depends(get_auth),
    token: str | None = Depends(get_binding_token),
) -> UserProfile:
    """Require a valid session bound to this browser. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(profile: UserProfile = Depends(get_current_profile)): ...
    """
    if not await auth.validate_browser(token) or auth.profile is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return auth.profile


def require_role(role: str) -> Callable:
    """Build a dependency that requires `role` (admins always pass)."""

    async def dependency(profile: UserProfile = Depends(get_current_profile)) -> UserProfile:
        if not profile.has_role(role):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"{role.capitalize()} access required."},
            )
        return profile

    return dependency
