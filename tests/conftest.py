"""
tests/conftest.py -- Shared test fixtures for ClinicDesk.

This module provides:
  - make_settings(): Settings tuned for tests (fast bcrypt, no settle delay)
  - cache / backend / facade: an isolated LocalCache + in-memory LocalBackend
    + started AuthFacade per test
  - _patch_lifespan(): builds the same stack inside the app's own event loop
  - api_client / web_client: TestClient over the real app with that stack

Design: the TestClient runs the app in its own event loop, so the stack it
uses is created inside the patched lifespan rather than shared with the
async fixtures. Every client fixture is function-scoped: the facade holds one
operator session, and tests must not inherit each other's sign-in.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Generator
from contextlib import asynccontextmanager
from pathlib import Path

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_backend
from auth.facade import AuthFacade
from auth.limiter import limiter
from backend.local import LocalBackend
from cache.store import LocalCache
from core.config import Settings, get_settings
from web.routes import router as web_router

# Mount the web router once (asgi.py does this in production).
if not any(getattr(r, "path", None) == "/dashboard" for r in app.routes):
    app.include_router(web_router, tags=["Web"])

TEST_SECRET = "test-secret-key-for-clinicdesk-0123456789"
DEMO_EMAIL = "tajademeh@outlook.com"
DEMO_PASSWORD = "admin@123"


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "backend": "local",
        "local_db_url": "sqlite:///:memory:",
        "register_settle_seconds": 0,
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Core stack fixtures (async tests)
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(cache_db_path=str(tmp_path / "cache.db"))


@pytest.fixture
def cache(tmp_path: Path) -> Generator[LocalCache, None, None]:
    store = LocalCache(tmp_path / "state.db")
    yield store
    store.close()


@pytest.fixture
def backend(cache: LocalCache) -> Generator[LocalBackend, None, None]:
    b = LocalBackend("sqlite:///:memory:", secret_key=TEST_SECRET, storage=cache, bcrypt_rounds=4)
    yield b
    b.engine.dispose()


@pytest.fixture
async def facade(backend: LocalBackend, cache: LocalCache, settings: Settings) -> AsyncIterator[AuthFacade]:
    f = AuthFacade(backend, cache, settings)
    await f.start()
    yield f
    await f.aclose()


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Same wiring as api.main.lifespan but from the given Settings, and with a
    long-sleeping placeholder instead of the purge loop.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.cache = LocalCache(settings.cache_db_path)
        app.state.backend = build_backend(settings, app.state.cache)
        app.state.auth = AuthFacade(app.state.backend, app.state.cache, settings)
        await app.state.auth.start()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        await app.state.auth.aclose()
        await app.state.backend.aclose()
        app.state.cache.close()

    return test_lifespan


def _client(settings: Settings, **kwargs) -> Generator[TestClient, None, None]:
    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(settings)
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        with TestClient(app, raise_server_exceptions=True, **kwargs) as client:
            yield client
    finally:
        app.dependency_overrides.pop(get_settings, None)


@pytest.fixture
def api_client(settings: Settings) -> Generator[TestClient, None, None]:
    """TestClient over the real app with a fresh local backend and signed-out facade."""
    yield from _client(settings)


@pytest.fixture
def web_client(settings: Settings) -> Generator[TestClient, None, None]:
    """Like api_client but with follow_redirects=False.

    Web route tests assert on redirect *locations*, which are invisible once
    the client follows the redirect and returns the final 200 response.
    """
    yield from _client(settings, follow_redirects=False)
