"""
tests/test_remote_backend.py -- RemoteBackend against a fake hosted service.

The fake speaks just enough GoTrue/PostgREST over httpx.MockTransport to run
the real client code: token grants, /user, /logout and a users table with
eq. filters, exact counts and unique ids.

Coverage:
  - Error classification of service responses, transport failures and
    non-JSON success pages
  - Password sign-in, session persistence, bearer header
  - Row storage params and Content-Range counting
  - OAuth with PKCE: challenge/verifier pairing, single-use verifier
  - Facade over the hosted backend: first OAuth identity becomes admin, the
    next is staff; network failure on restart keeps the cached profile,
    revoked session clears it
"""

from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge

from auth.credentials import INVALID_CREDENTIALS
from auth.facade import AuthFacade
from auth.state import PROFILE_KEY
from backend.base import ErrorKind
from backend.remote import PKCE_VERIFIER_KEY, SESSION_KEY, RemoteBackend, classify_response
from cache.store import LocalCache
from conftest import make_settings
from core.models import ROLE_ADMIN, ROLE_STAFF

BASE_URL = "https://clinic.supabase.test"
ANON_KEY = "anon-key"
CALLBACK = "http://localhost:8000/api/v1/auth/oauth/callback"


def _user(uid: str = "g-1", email: str = "doc@clinic.test", provider: str = "google") -> dict:
    return {
        "id": uid,
        "email": email,
        "app_metadata": {"provider": provider},
        "user_metadata": {"full_name": "Dr " + uid},
        "email_confirmed_at": "2024-01-01T00:00:00Z",
        "created_at": "2024-01-01T00:00:00Z",
    }


class FakeService:
    """In-process stand-in for the hosted auth + REST endpoints."""

    def __init__(self) -> None:
        self.user = _user()
        self.users: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.offline = False
        self.revoked = False
        self.token_counter = 0
        self.confirm_email = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if path == "/auth/v1/signup":
            body = json.loads(request.content)
            self.user = _user("new-1", body["email"], provider="email")
            self.user["user_metadata"] = body["data"]
            if self.confirm_email:
                return httpx.Response(200, json=self.user)
        if path in ("/auth/v1/token", "/auth/v1/signup"):
            self.token_counter += 1
            return httpx.Response(
                200,
                json={
                    "access_token": f"at-{self.token_counter}",
                    "refresh_token": f"rt-{self.token_counter}",
                    "expires_in": 3600,
                    "token_type": "bearer",
                    "user": self.user,
                },
            )
        if path == "/auth/v1/user":
            if self.revoked:
                return httpx.Response(401, json={"code": 401, "error_code": "bad_jwt", "msg": "invalid JWT"})
            return httpx.Response(200, json=self.user)
        if path == "/auth/v1/logout":
            return httpx.Response(204)
        if path == "/rest/v1/users":
            return self._users(request)
        return httpx.Response(404, json={"code": "PGRST205", "message": "Could not find the table"})

    def _users(self, request: httpx.Request) -> httpx.Response:
        filters = {k: v.removeprefix("eq.") for k, v in request.url.params.items() if v.startswith("eq.")}
        matching = [u for u in self.users if all(str(u.get(k)) == v for k, v in filters.items())]
        if request.method == "GET":
            if request.headers.get("prefer") == "count=exact":
                content_range = f"0-0/{len(matching)}" if matching else "*/0"
                return httpx.Response(200, json=matching[:1], headers={"content-range": content_range})
            return httpx.Response(200, json=matching)
        if request.method == "POST":
            row = json.loads(request.content)
            if any(u["id"] == row["id"] for u in self.users):
                return httpx.Response(409, json={"code": "23505", "message": "duplicate key value"})
            self.users.append(row)
            return httpx.Response(201, json=[row])
        if request.method == "PATCH":
            values = json.loads(request.content)
            for u in matching:
                u.update(values)
            return httpx.Response(200, json=matching)
        return httpx.Response(405)


@pytest.fixture
def service() -> FakeService:
    return FakeService()


@pytest.fixture
async def remote(service: FakeService, cache: LocalCache):
    backend = RemoteBackend(BASE_URL, ANON_KEY, storage=cache, transport=httpx.MockTransport(service))
    yield backend
    await backend.aclose()


def _remote_settings():
    return make_settings(backend="remote", supabase_url=BASE_URL, supabase_anon_key=ANON_KEY, oauth_providers=["google"])


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    @pytest.mark.parametrize(
        "status,body,kind",
        [
            (400, {"error": "invalid_grant", "error_description": "Invalid login credentials"}, ErrorKind.AUTHORIZATION),
            (400, {"error_code": "invalid_credentials"}, ErrorKind.AUTHORIZATION),
            (401, {"message": "JWT expired", "code": "PGRST301"}, ErrorKind.AUTHORIZATION),
            (403, {"code": "42501", "message": "permission denied"}, ErrorKind.AUTHORIZATION),
            (409, {"code": "23505"}, ErrorKind.CONFLICT),
            (422, {"error_code": "user_already_exists"}, ErrorKind.CONFLICT),
            (404, {"code": "42P01"}, ErrorKind.SCHEMA),
            (400, {"code": "PGRST204", "message": "Could not find the 'role' column"}, ErrorKind.SCHEMA),
            (429, {}, ErrorKind.RATE_LIMIT),
            (503, {}, ErrorKind.NETWORK),
            (500, {"message": "boom"}, ErrorKind.UNKNOWN),
        ],
    )
    def test_classify_response(self, status: int, body: dict, kind: ErrorKind) -> None:
        result = classify_response(httpx.Response(status, json=body))
        assert result.error.kind is kind
        assert result.error.status == status

    def test_non_json_body(self) -> None:
        result = classify_response(httpx.Response(502, text="<html>Bad gateway</html>"))
        assert result.error.kind is ErrorKind.NETWORK

    async def test_transport_error_is_network(self, cache: LocalCache) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        backend = RemoteBackend(BASE_URL, ANON_KEY, storage=cache, transport=httpx.MockTransport(refuse))
        result = await backend.auth.sign_in_with_password("a@clinic.test", "x")
        assert result.error.kind is ErrorKind.NETWORK
        await backend.aclose()

    async def test_html_success_page_is_network(self, cache: LocalCache) -> None:
        def captive_portal(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>Sign in to Wi-Fi</html>", headers={"content-type": "text/html"})

        backend = RemoteBackend(BASE_URL, ANON_KEY, storage=cache, transport=httpx.MockTransport(captive_portal))
        result = await backend.auth.sign_in_with_password("a@clinic.test", "x")
        assert result.error.kind is ErrorKind.NETWORK
        assert result.error.status == 200

        facade = AuthFacade(backend, cache, _remote_settings())
        assert await facade.login("a@clinic.test", "x", client_id="c1") is None
        assert facade.state.error == INVALID_CREDENTIALS
        await facade.aclose()
        await backend.aclose()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class TestRemoteAuth:
    async def test_password_sign_in(self, remote: RemoteBackend, service: FakeService, cache: LocalCache) -> None:
        service.user = _user("pw-1", "nurse@clinic.test", provider="email")
        result = await remote.auth.sign_in_with_password("nurse@clinic.test", "secret1")

        assert result.ok
        assert result.data.identity.provider == "email"
        assert not result.data.identity.is_oauth
        request = service.requests[-1]
        assert request.url.params["grant_type"] == "password"
        assert request.headers["apikey"] == ANON_KEY
        assert cache.get(SESSION_KEY)["access_token"] == "at-1"

    async def test_signed_in_requests_carry_bearer(self, remote: RemoteBackend, service: FakeService) -> None:
        await remote.auth.sign_in_with_password("doc@clinic.test", "secret1")
        await remote.tables.select("users")
        assert service.requests[-1].headers["authorization"] == "Bearer at-1"

    async def test_sign_out_clears_session(self, remote: RemoteBackend, cache: LocalCache) -> None:
        await remote.auth.sign_in_with_password("doc@clinic.test", "secret1")
        assert (await remote.auth.sign_out()).ok
        assert cache.get(SESSION_KEY) is None
        assert (await remote.auth.get_session()).data is None

    async def test_refresh_uses_refresh_token(self, remote: RemoteBackend, service: FakeService) -> None:
        await remote.auth.sign_in_with_password("doc@clinic.test", "secret1")
        result = await remote.auth.refresh_session()
        assert result.data.access_token == "at-2"
        assert json.loads(service.requests[-1].content) == {"refresh_token": "rt-1"}

    async def test_sign_up_pending_confirmation_has_no_session(self, cache: LocalCache) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_user("new-1", "new@clinic.test", provider="email"))

        backend = RemoteBackend(BASE_URL, ANON_KEY, storage=cache, transport=httpx.MockTransport(handler))
        result = await backend.auth.sign_up("new@clinic.test", "secret1", {"name": "New"})
        assert result.ok
        assert result.data.session is None
        assert result.data.identity.id == "new-1"
        await backend.aclose()


class TestPkce:
    async def test_authorize_url_and_code_exchange(
        self, remote: RemoteBackend, service: FakeService, cache: LocalCache
    ) -> None:
        started = await remote.auth.sign_in_with_oauth("google", CALLBACK)
        url = urlparse(started.data)
        query = parse_qs(url.query)

        assert f"{url.scheme}://{url.netloc}{url.path}" == f"{BASE_URL}/auth/v1/authorize"
        assert query["provider"] == ["google"]
        assert query["redirect_to"] == [CALLBACK]
        assert query["code_challenge_method"] == ["s256"]
        verifier = cache.get(PKCE_VERIFIER_KEY)
        assert query["code_challenge"] == [create_s256_code_challenge(verifier)]

        exchanged = await remote.auth.exchange_code_for_session("auth-code-1")
        assert exchanged.ok
        body = json.loads(service.requests[-1].content)
        assert body == {"auth_code": "auth-code-1", "code_verifier": verifier}
        assert service.requests[-1].url.params["grant_type"] == "pkce"
        assert cache.get(PKCE_VERIFIER_KEY) is None

    async def test_exchange_without_verifier_fails(self, remote: RemoteBackend) -> None:
        result = await remote.auth.exchange_code_for_session("auth-code-1")
        assert result.error.kind is ErrorKind.AUTHORIZATION


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------


class TestRemoteTables:
    async def test_select_params(self, remote: RemoteBackend, service: FakeService) -> None:
        await remote.tables.select("users", {"id": "u-1", "is_active": True}, order="created_at", descending=True, limit=5)
        params = service.requests[-1].url.params
        assert params["id"] == "eq.u-1"
        assert params["is_active"] == "eq.true"
        assert params["order"] == "created_at.desc"
        assert params["limit"] == "5"

    async def test_count_reads_content_range(self, remote: RemoteBackend, service: FakeService) -> None:
        assert (await remote.tables.count("users", {"role": "admin"})).data == 0
        service.users = [{"id": str(i), "role": "admin"} for i in range(7)]
        assert (await remote.tables.count("users", {"role": "admin"})).data == 7

    async def test_insert_conflict(self, remote: RemoteBackend) -> None:
        row = {"id": "u-1", "email": "a@clinic.test", "name": "A", "role": "staff"}
        assert (await remote.tables.insert("users", row)).data == row
        assert (await remote.tables.insert("users", row)).error.kind is ErrorKind.CONFLICT

    async def test_unknown_table_is_schema(self, remote: RemoteBackend) -> None:
        result = await remote.tables.select("appointments")
        assert result.error.kind is ErrorKind.SCHEMA


# ---------------------------------------------------------------------------
# Facade over the hosted backend
# ---------------------------------------------------------------------------


class TestFacadeOverRemote:
    async def test_first_oauth_identity_is_admin_next_is_staff(
        self, remote: RemoteBackend, service: FakeService, cache: LocalCache
    ) -> None:
        facade = AuthFacade(remote, cache, _remote_settings())
        await facade.start()

        url = await facade.login_with_oauth("google", CALLBACK, client_id="c1")
        assert url.startswith(f"{BASE_URL}/auth/v1/authorize?")
        first = await facade.complete_oauth("code-1", client_id="c1")
        assert first.role == ROLE_ADMIN
        assert first.oauth_provider == "google"
        await facade.logout()

        service.user = _user("g-2", "second@clinic.test")
        await facade.login_with_oauth("google", CALLBACK, client_id="c1")
        second = await facade.complete_oauth("code-2", client_id="c1")
        assert second.role == ROLE_STAFF
        assert len(service.users) == 2
        await facade.aclose()

    async def test_register_with_session_keeps_the_listener_row(
        self, remote: RemoteBackend, service: FakeService, cache: LocalCache
    ) -> None:
        facade = AuthFacade(remote, cache, _remote_settings())
        await facade.start()

        assert await facade.register("new@clinic.test", "secret1", "New Nurse") is True

        assert len(service.users) == 1
        assert facade.profile.id == "new-1"
        assert facade.profile.role == ROLE_STAFF
        await facade.aclose()

    async def test_register_pending_confirmation_creates_profile(
        self, remote: RemoteBackend, service: FakeService, cache: LocalCache
    ) -> None:
        service.confirm_email = True
        facade = AuthFacade(remote, cache, _remote_settings())
        await facade.start()

        assert await facade.register("new@clinic.test", "secret1", "New Nurse") is True

        # no session yet, so no sign-in event: the facade wrote the row itself
        assert [(u["id"], u["name"], u["role"]) for u in service.users] == [("new-1", "New Nurse", ROLE_STAFF)]
        assert facade.profile is None
        await facade.aclose()

    async def test_disabled_provider_is_refused(self, remote: RemoteBackend, cache: LocalCache) -> None:
        facade = AuthFacade(remote, cache, _remote_settings())
        assert await facade.login_with_oauth("github", CALLBACK) is None
        await facade.aclose()

    async def test_restart_offline_keeps_cached_profile(
        self, remote: RemoteBackend, service: FakeService, cache: LocalCache
    ) -> None:
        first = AuthFacade(remote, cache, _remote_settings())
        await first.start()
        await first.login_with_oauth("google", CALLBACK)
        await first.complete_oauth("code-1")
        await first.aclose()

        service.offline = True
        restarted = RemoteBackend(BASE_URL, ANON_KEY, storage=cache, transport=httpx.MockTransport(service))
        facade = AuthFacade(restarted, cache, _remote_settings())
        profile = await facade.start()

        assert profile is not None and profile.id == "g-1"
        assert facade.state.stale is True
        assert await facade.validate_session() is True
        await facade.aclose()
        await restarted.aclose()

    async def test_restart_with_revoked_session_clears(
        self, remote: RemoteBackend, service: FakeService, cache: LocalCache
    ) -> None:
        first = AuthFacade(remote, cache, _remote_settings())
        await first.start()
        await first.login_with_oauth("google", CALLBACK)
        await first.complete_oauth("code-1")
        await first.aclose()

        service.revoked = True
        restarted = RemoteBackend(BASE_URL, ANON_KEY, storage=cache, transport=httpx.MockTransport(service))
        facade = AuthFacade(restarted, cache, _remote_settings())

        assert await facade.start() is None
        assert cache.get(PROFILE_KEY) is None
        await facade.aclose()
        await restarted.aclose()
