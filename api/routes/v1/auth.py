"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login            -- password login (demo pair included)
  POST /api/v1/auth/register         -- create identity + profile
  POST /api/v1/auth/logout           -- end the session; always 200
  GET  /api/v1/auth/session          -- validate (and refresh) the session
  GET  /api/v1/auth/me               -- current profile (requires auth)
  GET  /api/v1/auth/providers        -- enabled OAuth providers (public)
  GET  /api/v1/auth/oauth/callback   -- provider redirect target; finishes sign-in
  GET  /api/v1/auth/oauth/{provider} -- 302 to the provider consent screen
  GET  /api/v1/auth/users            -- every profile (admin only)

The session itself lives in the AuthFacade on app.state.auth; no backend token
is ever handed to the browser. Sign-in routes set the httpOnly browser binding
cookie (auth/binding.py); /session, /me and /users only answer the browser
that holds it.

Security:
  POST /login, /register and GET /oauth/{provider} carry a per-IP slowapi
  limit on top of the facade's fingerprint limiter.
  The login error text is the same for an unknown email, a wrong password and
  a backend outage.
  Cache-Control: no-store on every response that carries profile data.
"""

from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.models import (
    ErrorDetail,
    ErrorResponse,
    LoginRequest,
    OAuthProviderInfo,
    ProfileResponse,
    RegisterRequest,
    RegisterResponse,
    SessionResponse,
)
from auth.credentials import INVALID_CREDENTIALS, TOO_MANY_ATTEMPTS
from auth.dependencies import get_auth, get_binding_token, get_client_id, get_current_profile, require_role
from auth.facade import REGISTRATION_FAILED, AuthFacade
from auth.limiter import limiter
from auth.oauth import get_enabled_providers, is_enabled
from core.config import Settings, get_settings
from core.models import ROLE_ADMIN, UserProfile

# Auth policy:
# - POST /auth/login, /auth/register, /auth/logout:  public
# - GET  /auth/session, /auth/providers:             public
# - GET  /auth/oauth/{provider}, /auth/oauth/callback: public
# - GET  /auth/me:                                   requires auth (get_current_profile)
# - GET  /auth/users:                                requires admin (require_role)
router = APIRouter()


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message)).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _session_payload(auth: AuthFacade, authenticated: bool) -> dict:
    state = auth.state
    return SessionResponse.build(
        authenticated=authenticated,
        profile=state.profile,
        session=state.session,
        demo_mode=state.demo_mode,
        stale=state.stale,
    ).model_dump()


# ---------------------------------------------------------------------------
# Password sign-in and registration
# ---------------------------------------------------------------------------


@limiter.limit("10/minute")  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=SessionResponse)
async def login(
    request: Request,
    body: LoginRequest,
    auth: AuthFacade = Depends(get_auth),
    client_id: str = Depends(get_client_id),
) -> JSONResponse:
    """Sign in with email and password.

    401 with the generic message for any credential or backend failure,
    429 when the client-side attempt window is exhausted.
    """
    profile = await auth.login(body.email, body.password, client_id=client_id)
    if profile is None:
        if auth.state.error == TOO_MANY_ATTEMPTS:
            return _error(429, "too_many_attempts", TOO_MANY_ATTEMPTS)
        return _error(401, "bad_credentials", INVALID_CREDENTIALS)
    resp = _no_store(_session_payload(auth, authenticated=True))
    auth.binding.set_cookie(resp, auth.binding.issue())
    return resp


@limiter.limit("5/minute")
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
async def register(
    request: Request,
    body: RegisterRequest,
    auth: AuthFacade = Depends(get_auth),
    client_id: str = Depends(get_client_id),
) -> JSONResponse:
    """Create an identity and its staff profile.

    signed_in is False when the identity service wants the email confirmed
    first; the profile row exists either way.
    """
    created = await auth.register(body.email, body.password, body.name, client_id=client_id)
    if not created:
        if auth.state.error == TOO_MANY_ATTEMPTS:
            return _error(429, "too_many_attempts", TOO_MANY_ATTEMPTS)
        return _error(400, "registration_failed", REGISTRATION_FAILED)
    profile = auth.profile
    resp = _no_store(
        RegisterResponse(
            signed_in=auth.is_authenticated,
            profile=ProfileResponse.from_profile(profile) if profile else None,
        ).model_dump(),
        status_code=201,
    )
    if auth.is_authenticated:
        auth.binding.set_cookie(resp, auth.binding.issue())
    return resp


@router.post("/auth/logout")
async def logout(
    auth: AuthFacade = Depends(get_auth),
    token: str | None = Depends(get_binding_token),
) -> JSONResponse:
    """End the session held by this browser.

    Local state is cleared even if the service call fails. A browser that does
    not hold the session only has its binding cookie removed.
    """
    if auth.binding.owns(token):
        await auth.logout()
    resp = _no_store({"message": "Logged out."})
    auth.binding.clear_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Session inspection
# ---------------------------------------------------------------------------


@router.get("/auth/session", response_model=SessionResponse)
async def session(
    auth: AuthFacade = Depends(get_auth),
    token: str | None = Depends(get_binding_token),
) -> JSONResponse:
    """Validate this browser's session, refreshing it when it is close to expiry."""
    valid = await auth.validate_browser(token)
    return _no_store(_session_payload(auth, authenticated=valid))


@router.get("/auth/me", response_model=ProfileResponse)
async def me(profile: UserProfile = Depends(get_current_profile)) -> JSONResponse:
    """Return the profile of the signed-in user."""
    return _no_store(ProfileResponse.from_profile(profile).model_dump())


@router.get("/auth/users", response_model=list[ProfileResponse])
async def list_users(
    auth: AuthFacade = Depends(get_auth),
    current: UserProfile = Depends(require_role(ROLE_ADMIN)),
) -> JSONResponse:
    """List every clinic profile. Admin only."""
    profiles = await auth.resolver.list_profiles()
    if profiles is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "unavailable", "message": "User list is temporarily unavailable."},
        )
    return _no_store([ProfileResponse.from_profile(p).model_dump() for p in profiles])


# ---------------------------------------------------------------------------
# OAuth
#
# /auth/oauth/callback is registered before /auth/oauth/{provider} or FastAPI
# would capture "callback" as a provider name.
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(settings: Settings = Depends(get_settings)) -> list[OAuthProviderInfo]:
    """Return the OAuth providers the login page should offer.

    Empty when the local prototype backend is configured.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(settings)]


@router.get("/auth/oauth/callback")
async def oauth_callback(
    code: str | None = None,
    error: str | None = None,
    auth: AuthFacade = Depends(get_auth),
    client_id: str = Depends(get_client_id),
) -> RedirectResponse:
    """Finish an OAuth sign-in and send the browser to the dashboard."""
    if error or not code:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)
    profile = await auth.complete_oauth(code, client_id=client_id)
    if profile is None:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)
    resp = RedirectResponse("/dashboard", status_code=302)
    auth.binding.set_cookie(resp, auth.binding.issue())
    return resp


@limiter.limit("10/minute")
@router.get("/auth/oauth/{provider}")
async def oauth_start(
    request: Request,
    provider: str,
    auth: AuthFacade = Depends(get_auth),
    client_id: str = Depends(get_client_id),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Redirect the browser to the provider's consent screen."""
    if not is_enabled(settings, provider):
        raise HTTPException(
            status_code=404,
            detail={"code": "unknown_provider", "message": "OAuth provider is not enabled."},
        )
    url = await auth.login_with_oauth(provider, settings.oauth_redirect_url, client_id=client_id)
    if url is None:
        reason = "too_many_attempts" if auth.state.error == TOO_MANY_ATTEMPTS else "oauth_failed"
        return RedirectResponse(f"/login?error={quote(reason)}", status_code=302)
    return RedirectResponse(url, status_code=302)
