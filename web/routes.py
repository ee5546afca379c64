"""
web/routes.py -- Server-rendered login page and the protected dashboard shells.

These routes share app.state.auth with the API routes but return HTML and
redirects instead of JSON. The dashboard screens themselves (patients,
treatments, payments, notifications, discharge) are rendered by the frontend;
this module only decides whether the visitor may see them: only the browser
holding the binding cookie set at sign-in (auth/binding.py) passes the gate.

Routes:
  GET  /               -- redirect to /dashboard
  GET  /login          -- login form (redirects to next= when already signed in)
  POST /login          -- handle password login (per-IP limit), bind the
                         browser, redirect to next=
  POST /logout         -- end the session, redirect /login
  GET  /dashboard      -- protected view shells, one per entry in VIEWS
  GET  /patients
  GET  /treatments
  GET  /payments
  GET  /notifications
  GET  /discharge
"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from auth.binding import BINDING_COOKIE
from auth.credentials import INVALID_CREDENTIALS, OAUTH_FAILED, TOO_MANY_ATTEMPTS
from auth.facade import AuthFacade
from auth.limiter import limiter
from auth.oauth import get_enabled_providers
from auth.rate_limit import client_fingerprint
from core.config import get_settings
from core.models import ProtectedView

logger = logging.getLogger("clinicdesk.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

VIEWS: list[ProtectedView] = [
    ProtectedView("/dashboard", "Dashboard"),
    ProtectedView("/patients", "Patients"),
    ProtectedView("/treatments", "Treatments"),
    ProtectedView("/payments", "Payments"),
    ProtectedView("/notifications", "Notifications"),
    ProtectedView("/discharge", "Discharge"),
]

# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= query params on /login.
# The raw query param is NEVER passed to templates -- only the message from
# this dict is.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": INVALID_CREDENTIALS,
    "too_many_attempts": TOO_MANY_ATTEMPTS,
    "oauth_failed": OAUTH_FAILED,
}


def _safe_next(next_url: Optional[str]) -> str:
    """Validate a post-login redirect target. Only accept relative paths.

    Rejects absolute URLs and protocol-relative ones ("//host/...") so the
    login form cannot be used as an open redirect.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return "/dashboard"


def _auth(request: Request) -> AuthFacade:
    return request.app.state.auth


async def _signed_in(request: Request) -> bool:
    return await _auth(request).validate_browser(request.cookies.get(BINDING_COOKIE))


async def _require_auth(request: Request, required_role: Optional[str] = None) -> Optional[RedirectResponse]:
    """Gate a view on a valid session and, optionally, a role.

    Returns a RedirectResponse when the visitor may not see the view, None
    otherwise. Call at the top of protected route handlers:
        if redirect := await _require_auth(request):
            return redirect

    Not signed in from this browser -> /login?next=<path>. Signed in without
    the role -> /dashboard (admins satisfy every role).
    """
    auth = _auth(request)
    if not await _signed_in(request) or auth.profile is None:
        return RedirectResponse(f"/login?next={quote(request.url.path)}", status_code=302)
    if required_role and not auth.profile.has_role(required_role):
        logger.info("%s lacks role %s for %s", auth.profile.email, required_role, request.url.path)
        return RedirectResponse("/dashboard", status_code=302)
    return None


def _login_page(request: Request, next_url: str, error: Optional[str], status_code: int = 200) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "next": next_url,
            "error": error,
            "providers": get_enabled_providers(get_settings()),
        },
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/", include_in_schema=False)
async def index() -> RedirectResponse:
    return RedirectResponse("/dashboard", status_code=302)


@router.get("/login", response_class=HTMLResponse)
async def login_form(request: Request, next: Optional[str] = None, error: Optional[str] = None):
    target = _safe_next(next)
    if await _signed_in(request):
        return RedirectResponse(target, status_code=302)
    return _login_page(request, target, _ERROR_MESSAGES.get(error or ""))


@limiter.limit("10/minute")  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_class=HTMLResponse)
async def login_submit(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    next: str = Form("/dashboard"),
):
    auth = _auth(request)
    client_id = client_fingerprint(request.headers.get("user-agent"))
    profile = await auth.login(email, password, client_id=client_id)
    if profile is None:
        message = auth.state.error if auth.state.error == TOO_MANY_ATTEMPTS else INVALID_CREDENTIALS
        status = 429 if message == TOO_MANY_ATTEMPTS else 401
        return _login_page(request, _safe_next(next), message, status_code=status)
    # 303 so the browser follows with GET
    resp = RedirectResponse(_safe_next(next), status_code=303)
    auth.binding.set_cookie(resp, auth.binding.issue())
    return resp


@router.post("/logout")
async def logout(request: Request) -> RedirectResponse:
    auth = _auth(request)
    if auth.binding.owns(request.cookies.get(BINDING_COOKIE)):
        await auth.logout()
    resp = RedirectResponse("/login", status_code=303)
    auth.binding.clear_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Protected views
# ---------------------------------------------------------------------------


def _make_view(view: ProtectedView):
    async def render(request: Request):
        if redirect := await _require_auth(request, view.required_role):
            return redirect
        state = _auth(request).state
        return templates.TemplateResponse(
            request,
            "view.html",
            {
                "view": view,
                "views": VIEWS,
                "profile": state.profile,
                "demo_mode": state.demo_mode,
                "stale": state.stale,
            },
        )

    render.__name__ = f"view_{view.path.strip('/')}"
    return render


for _view in VIEWS:
    router.add_api_route(_view.path, _make_view(_view), methods=["GET"], response_class=HTMLResponse)
