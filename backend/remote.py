"""
backend/remote.py -- httpx client for the hosted backend-as-a-service.

Speaks the GoTrue (/auth/v1) and PostgREST (/rest/v1) HTTP dialects of the
hosted Postgres service:

  POST /auth/v1/token?grant_type=password        sign in
  POST /auth/v1/signup                           sign up
  POST /auth/v1/logout                           sign out
  POST /auth/v1/token?grant_type=refresh_token   refresh
  POST /auth/v1/token?grant_type=pkce            OAuth code exchange
  GET  /auth/v1/user                             current identity
  GET  /auth/v1/authorize?provider=...           OAuth redirect target
  GET|POST|PATCH|DELETE /rest/v1/<table>         row storage

Every request carries the anon key in the `apikey` header. Requests made while
signed in use the session's access token as the bearer; otherwise the anon key.

OAuth uses PKCE (RFC 7636, S256) via authlib: the verifier is kept in the
LocalCache between the redirect and the callback, which mirrors how the
browser client keeps it in storage.

Error responses are classified into the ErrorKind taxonomy by
classify_response(); transport failures and non-JSON success bodies are
NETWORK.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from backend.base import AuthAPI, AuthEvent, Backend, ErrorKind, Result, TableAPI
from cache.store import LocalCache
from core.models import PASSWORD_PROVIDER, AuthResponse, Identity, Session

logger = logging.getLogger("clinicdesk.backend.remote")

SESSION_KEY = "clinic.auth.session"
PKCE_VERIFIER_KEY = "clinic.auth.pkceVerifier"
_PKCE_TTL = 10 * 60

# PostgREST / Postgres codes -> error class
_AUTHORIZATION_CODES = {
    "42501",  # insufficient_privilege (row level security)
    "PGRST301",  # JWT invalid
    "PGRST302",  # anonymous access disabled
    "invalid_grant",
    "invalid_credentials",
    "bad_jwt",
    "session_not_found",
    "session_expired",
    "refresh_token_not_found",
    "user_not_found",
    "no_authorization",
}
_SCHEMA_CODES = {
    "42P01",  # undefined_table
    "42703",  # undefined_column
    "42883",  # undefined_function
    "PGRST200",
    "PGRST204",
    "PGRST205",
}
_CONFLICT_CODES = {"23505", "user_already_exists", "email_exists"}
_TRANSIENT_STATUSES = {502, 503, 504}


def classify_response(resp: httpx.Response) -> Result:
    """Turn an error response into a failed Result with the right ErrorKind."""
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = body.get("code") or body.get("error_code") or body.get("error")
    code = str(code) if code is not None else None
    message = (
        body.get("message") or body.get("msg") or body.get("error_description") or resp.reason_phrase or "error"
    )
    status = resp.status_code

    if code in _CONFLICT_CODES or status == 409:
        kind = ErrorKind.CONFLICT
    elif code in _AUTHORIZATION_CODES or status in (401, 403):
        kind = ErrorKind.AUTHORIZATION
    elif code in _SCHEMA_CODES or (code or "").startswith("PGRST2") or status == 404:
        kind = ErrorKind.SCHEMA
    elif status == 429:
        kind = ErrorKind.RATE_LIMIT
    elif status in _TRANSIENT_STATUSES:
        kind = ErrorKind.NETWORK
    else:
        kind = ErrorKind.UNKNOWN
    return Result.fail(kind, str(message), code=code, status=status)


def _identity_from_user(user: dict) -> Identity:
    """Normalize a GoTrue user object into an Identity."""
    app_meta = user.get("app_metadata") or {}
    user_meta = user.get("user_metadata") or {}
    return Identity(
        id=user["id"],
        email=user.get("email") or "",
        provider=app_meta.get("provider") or PASSWORD_PROVIDER,
        name=user_meta.get("name") or user_meta.get("full_name"),
        email_verified=bool(user.get("email_confirmed_at") or user_meta.get("email_verified")),
        created_at=user.get("created_at"),
    )


def _session_from_token(payload: dict) -> Session:
    if payload.get("expires_at"):
        expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
    else:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(payload.get("expires_in", 3600)))
    return Session(
        access_token=payload["access_token"],
        refresh_token=payload["refresh_token"],
        expires_at=expires_at,
        identity=_identity_from_user(payload["user"]),
    )


def _filter_params(filters: dict[str, Any] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for col, value in (filters or {}).items():
        if value is None:
            params[col] = "is.null"
        elif isinstance(value, bool):
            params[col] = f"eq.{str(value).lower()}"
        else:
            params[col] = f"eq.{value}"
    return params


class _Transport:
    """Shared request helper: headers, transport errors, error classification."""

    def __init__(self, http: httpx.AsyncClient, anon_key: str) -> None:
        self.http = http
        self.anon_key = anon_key
        self.access_token: str | None = None

    async def request(
        self,
        method: str,
        path: str,
        *,
        bearer: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs,
    ) -> tuple[Result, httpx.Response | None]:
        merged = {"Authorization": f"Bearer {bearer or self.access_token or self.anon_key}"}
        merged.update(headers or {})
        try:
            resp = await self.http.request(method, path, headers=merged, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            return Result.fail(ErrorKind.NETWORK, str(exc) or type(exc).__name__), None
        if resp.status_code >= 400:
            result = classify_response(resp)
            logger.debug("%s %s -> %d %s", method, path, resp.status_code, result.error)
            return result, resp
        if not resp.content:
            return Result(data=None), resp
        try:
            data = resp.json()
        except ValueError:
            # A 2xx that is not JSON came from something in between (captive
            # portal, proxy login page), not from the service.
            logger.warning(
                "%s %s returned a non-JSON body (%s)", method, path, resp.headers.get("content-type", "unknown")
            )
            return Result.fail(ErrorKind.NETWORK, "Unexpected non-JSON response", status=resp.status_code), resp
        return Result(data=data), resp


# ---------------------------------------------------------------------------
# Identity service
# ---------------------------------------------------------------------------


class RemoteAuth(AuthAPI):
    def __init__(self, transport: _Transport, base_url: str, storage: LocalCache | None = None) -> None:
        super().__init__()
        self._t = transport
        self._base_url = base_url.rstrip("/")
        self._storage = storage
        self._session: Session | None = None
        self._pkce_verifier: str | None = None
        if storage is not None:
            stored = storage.get(SESSION_KEY)
            if stored:
                self._set_session(Session.from_dict(stored), persist=False)

    def _set_session(self, session: Session | None, persist: bool = True) -> None:
        self._session = session
        self._t.access_token = session.access_token if session else None
        if not persist or self._storage is None:
            return
        if session is None:
            self._storage.delete(SESSION_KEY)
        else:
            self._storage.set(SESSION_KEY, session.to_dict())

    async def _token_grant(self, grant_type: str, body: dict) -> Result[Session]:
        result, _ = await self._t.request(
            "POST", "/auth/v1/token", params={"grant_type": grant_type}, json=body, bearer=self._t.anon_key
        )
        if not result.ok:
            return result
        try:
            return Result(data=_session_from_token(result.data))
        except (KeyError, TypeError, ValueError) as exc:
            return Result.fail(ErrorKind.SCHEMA, f"Unexpected token response: {exc}")

    async def sign_in_with_password(self, email: str, password: str) -> Result[AuthResponse]:
        result = await self._token_grant("password", {"email": email, "password": password})
        if not result.ok:
            return result
        session = result.data
        self._set_session(session)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return Result(data=AuthResponse(identity=session.identity, session=session))

    async def sign_up(self, email: str, password: str, metadata: dict | None = None) -> Result[AuthResponse]:
        result, _ = await self._t.request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password, "data": metadata or {}},
            bearer=self._t.anon_key,
        )
        if not result.ok:
            return result
        payload = result.data or {}
        try:
            if payload.get("access_token"):
                session = _session_from_token(payload)
                self._set_session(session)
                await self._emit(AuthEvent.SIGNED_IN, session)
                return Result(data=AuthResponse(identity=session.identity, session=session))
            # Email confirmation pending: the body is the user object itself.
            user = payload.get("user") or payload
            return Result(data=AuthResponse(identity=_identity_from_user(user)))
        except (KeyError, TypeError, ValueError) as exc:
            return Result.fail(ErrorKind.SCHEMA, f"Unexpected sign-up response: {exc}")

    async def sign_out(self) -> Result[None]:
        result = Result()
        if self._session is not None:
            result, _ = await self._t.request("POST", "/auth/v1/logout", bearer=self._session.access_token)
            if not result.ok:
                logger.warning("Remote sign-out failed (%s); clearing local session anyway", result.error)
        self._set_session(None)
        await self._emit(AuthEvent.SIGNED_OUT, None)
        return result

    async def get_session(self) -> Result[Session]:
        """Validate the stored session against the service.

        An expired access token is refreshed first. Any failure is returned
        as-is; the caller decides between degrading and signing out.
        """
        if self._session is None:
            return Result(data=None)
        if self._session.remaining() <= timedelta(0):
            return await self.refresh_session()
        user = await self.get_user()
        if not user.ok:
            return user
        self._session.identity = user.data
        return Result(data=self._session)

    async def refresh_session(self) -> Result[Session]:
        if self._session is None:
            return Result.fail(ErrorKind.AUTHORIZATION, "Auth session missing", "session_not_found", 401)
        result = await self._token_grant("refresh_token", {"refresh_token": self._session.refresh_token})
        if not result.ok:
            return result
        self._set_session(result.data)
        await self._emit(AuthEvent.TOKEN_REFRESHED, result.data)
        return result

    async def get_user(self) -> Result[Identity]:
        if self._session is None:
            return Result.fail(ErrorKind.AUTHORIZATION, "Auth session missing", "session_not_found", 401)
        result, _ = await self._t.request("GET", "/auth/v1/user", bearer=self._session.access_token)
        if not result.ok:
            return result
        try:
            return Result(data=_identity_from_user(result.data))
        except (KeyError, TypeError) as exc:
            return Result.fail(ErrorKind.SCHEMA, f"Unexpected user response: {exc}")

    async def sign_in_with_oauth(self, provider: str, redirect_to: str) -> Result[str]:
        verifier = generate_token(64)
        if self._storage is not None:
            self._storage.set(PKCE_VERIFIER_KEY, verifier, ttl=_PKCE_TTL)
        else:
            self._pkce_verifier = verifier
        query = urlencode(
            {
                "provider": provider,
                "redirect_to": redirect_to,
                "code_challenge": create_s256_code_challenge(verifier),
                "code_challenge_method": "s256",
            }
        )
        return Result(data=f"{self._base_url}/auth/v1/authorize?{query}")

    async def exchange_code_for_session(self, code: str) -> Result[AuthResponse]:
        if self._storage is not None:
            verifier = self._storage.get(PKCE_VERIFIER_KEY)
            self._storage.delete(PKCE_VERIFIER_KEY)
        else:
            verifier = self._pkce_verifier
            self._pkce_verifier = None
        if not verifier:
            return Result.fail(ErrorKind.AUTHORIZATION, "PKCE code verifier not found", "bad_code_verifier", 400)
        result = await self._token_grant("pkce", {"auth_code": code, "code_verifier": verifier})
        if not result.ok:
            return result
        session = result.data
        self._set_session(session)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return Result(data=AuthResponse(identity=session.identity, session=session))


# ---------------------------------------------------------------------------
# Row storage
# ---------------------------------------------------------------------------


class RemoteTables(TableAPI):
    def __init__(self, transport: _Transport) -> None:
        self._t = transport

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> Result[list[dict]]:
        params = {"select": "*", **_filter_params(filters)}
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        result, _ = await self._t.request("GET", f"/rest/v1/{table}", params=params)
        return result

    async def insert(self, table: str, row: dict[str, Any]) -> Result[dict]:
        result, _ = await self._t.request(
            "POST", f"/rest/v1/{table}", json=row, headers={"Prefer": "return=representation"}
        )
        if not result.ok:
            return result
        rows = result.data or []
        return Result(data=rows[0] if rows else dict(row))

    async def update(self, table: str, filters: dict[str, Any], values: dict[str, Any]) -> Result[list[dict]]:
        result, _ = await self._t.request(
            "PATCH",
            f"/rest/v1/{table}",
            params=_filter_params(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return result

    async def delete(self, table: str, filters: dict[str, Any]) -> Result[int]:
        result, _ = await self._t.request(
            "DELETE", f"/rest/v1/{table}", params=_filter_params(filters), headers={"Prefer": "return=representation"}
        )
        if not result.ok:
            return result
        return Result(data=len(result.data or []))

    async def count(self, table: str, filters: dict[str, Any] | None = None) -> Result[int]:
        result, resp = await self._t.request(
            "GET",
            f"/rest/v1/{table}",
            params={"select": "id", "limit": "1", **_filter_params(filters)},
            headers={"Prefer": "count=exact"},
        )
        if not result.ok:
            return result
        # Content-Range: "0-0/7" or "*/0"
        total = resp.headers.get("content-range", "").rpartition("/")[2]
        if total.isdigit():
            return Result(data=int(total))
        return Result(data=len(result.data or []))


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class RemoteBackend(Backend):
    """Hosted backend client.

    transport is for tests (httpx.MockTransport); production uses the default.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        storage: LocalCache | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=url.rstrip("/"),
            headers={"apikey": anon_key},
            timeout=timeout,
            transport=transport,
        )
        t = _Transport(self._http, anon_key)
        self.auth = RemoteAuth(t, url, storage=storage)
        self.tables = RemoteTables(t)

    async def aclose(self) -> None:
        await self._http.aclose()
