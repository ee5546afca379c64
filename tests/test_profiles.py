"""
tests/test_profiles.py -- ProfileResolver against the local SQLite backend.

Coverage:
  - First OAuth identity with zero admins becomes admin; the next is staff
  - Password identities are always staff
  - Existing rows are returned and annotated, not re-created
  - Two concurrent resolutions for one new identity produce one row
  - Two concurrent first OAuth sign-ins produce one admin
  - Error policy: authorization signs out, schema synthesizes, network fails
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from auth.profiles import ProfileResolver, synthesize_profile
from backend.base import AuthAPI, ErrorKind, Result
from backend.local import LocalBackend
from core.models import ROLE_ADMIN, ROLE_STAFF, Identity


def _oauth(n: int) -> Identity:
    return Identity(id=f"oauth-{n}", email=f"doctor{n}@clinic.test", provider="google", name=f"Doctor {n}", email_verified=True)


def _password(n: int) -> Identity:
    return Identity(id=f"pw-{n}", email=f"nurse{n}@clinic.test", name=f"Nurse {n}")


def _mock_auth(identity: Identity | None = None) -> MagicMock:
    auth = MagicMock(spec=AuthAPI)
    auth.get_user.return_value = Result(data=identity) if identity else Result.fail(ErrorKind.AUTHORIZATION, "no user")
    auth.sign_out.return_value = Result()
    return auth


class _Wrapped:
    """Delegates to real tables, with selected operations overridden."""

    def __init__(self, inner, **overrides) -> None:
        self._inner = inner
        self._overrides = overrides

    def __getattr__(self, name):
        return self._overrides.get(name) or getattr(self._inner, name)


async def _count_users(backend: LocalBackend) -> int:
    return (await backend.tables.count("users")).data


class TestRoleAssignment:
    async def test_first_oauth_identity_becomes_admin_then_staff(self, backend: LocalBackend) -> None:
        resolver = ProfileResolver(_mock_auth(), backend.tables)
        first = await resolver.resolve("oauth-1", identity=_oauth(1))
        second = await resolver.resolve("oauth-2", identity=_oauth(2))
        assert first.role == ROLE_ADMIN
        assert second.role == ROLE_STAFF
        assert await _count_users(backend) == 2

    async def test_password_identity_is_staff_even_without_admins(self, backend: LocalBackend) -> None:
        resolver = ProfileResolver(_mock_auth(), backend.tables)
        profile = await resolver.resolve("pw-1", identity=_password(1))
        assert profile.role == ROLE_STAFF
        assert profile.oauth_provider is None

    async def test_identity_fetched_when_not_given(self, backend: LocalBackend) -> None:
        auth = _mock_auth(_oauth(7))
        resolver = ProfileResolver(auth, backend.tables)
        profile = await resolver.resolve("oauth-7")
        auth.get_user.assert_awaited_once()
        assert profile.email == "doctor7@clinic.test"
        assert profile.role == ROLE_ADMIN


class TestExistingProfiles:
    async def test_existing_row_is_returned_and_annotated(self, backend: LocalBackend) -> None:
        resolver = ProfileResolver(_mock_auth(), backend.tables)
        created = await resolver.resolve("oauth-1", identity=_oauth(1))
        again = await resolver.resolve("oauth-1", identity=_oauth(1))
        assert again.id == created.id
        assert again.role == ROLE_ADMIN
        assert again.oauth_provider == "google"
        assert again.email_verified is True
        assert await _count_users(backend) == 1

    async def test_create_profile_uses_given_name(self, backend: LocalBackend) -> None:
        resolver = ProfileResolver(_mock_auth(), backend.tables)
        profile = await resolver.create_profile(_password(1), name="Head Nurse")
        assert profile.name == "Head Nurse"

    async def test_touch_last_login_persists(self, backend: LocalBackend) -> None:
        resolver = ProfileResolver(_mock_auth(), backend.tables)
        profile = await resolver.resolve("pw-1", identity=_password(1))
        assert profile.last_login_at is None
        touched = await resolver.touch_last_login(profile)
        rows = (await backend.tables.select("users", {"id": "pw-1"})).data
        assert touched.last_login_at is not None
        assert rows[0]["last_login_at"] == touched.last_login_at

    async def test_list_profiles_oldest_first(self, backend: LocalBackend) -> None:
        resolver = ProfileResolver(_mock_auth(), backend.tables)
        await resolver.resolve("oauth-1", identity=_oauth(1))
        await resolver.resolve("pw-1", identity=_password(1))
        profiles = await resolver.list_profiles()
        assert [p.id for p in profiles] == ["oauth-1", "pw-1"]


class TestConcurrentResolution:
    async def test_two_concurrent_resolutions_create_one_row(self, backend: LocalBackend) -> None:
        real_select = backend.tables.select

        async def yielding_select(*args, **kwargs):
            result = await real_select(*args, **kwargs)
            # let the other resolution observe the same (empty) result
            await asyncio.sleep(0)
            return result

        tables = _Wrapped(backend.tables, select=yielding_select)
        resolver = ProfileResolver(_mock_auth(), tables)
        identity = _oauth(1)

        a, b = await asyncio.gather(
            resolver.resolve(identity.id, identity=identity),
            resolver.resolve(identity.id, identity=identity),
        )
        assert a is not None and b is not None
        assert a.id == b.id == identity.id
        assert a.role == b.role == ROLE_ADMIN
        assert await _count_users(backend) == 1

    async def test_concurrent_new_oauth_identities_yield_one_admin(self, backend: LocalBackend) -> None:
        real_count = backend.tables.count

        async def yielding_count(*args, **kwargs):
            result = await real_count(*args, **kwargs)
            # give the other sign-in a chance to count zero admins as well
            await asyncio.sleep(0.01)
            return result

        resolver = ProfileResolver(_mock_auth(), _Wrapped(backend.tables, count=yielding_count))

        a, b = await asyncio.gather(
            resolver.resolve("oauth-1", identity=_oauth(1)),
            resolver.resolve("oauth-2", identity=_oauth(2)),
        )
        assert sorted([a.role, b.role]) == [ROLE_ADMIN, ROLE_STAFF]
        assert (await backend.tables.count("users", {"role": ROLE_ADMIN})).data == 1


class TestErrorPolicy:
    async def test_authorization_error_signs_out(self, backend: LocalBackend) -> None:
        async def denied(*args, **kwargs):
            return Result.fail(ErrorKind.AUTHORIZATION, "permission denied for table users", code="42501", status=403)

        auth = _mock_auth()
        resolver = ProfileResolver(auth, _Wrapped(backend.tables, select=denied))
        assert await resolver.resolve("pw-1", identity=_password(1)) is None
        auth.sign_out.assert_awaited_once()

    async def test_schema_error_synthesizes_unpersisted_profile(self, backend: LocalBackend) -> None:
        async def missing_table(*args, **kwargs):
            return Result.fail(ErrorKind.SCHEMA, 'relation "users" does not exist', code="42P01")

        resolver = ProfileResolver(_mock_auth(), _Wrapped(backend.tables, select=missing_table))
        profile = await resolver.resolve("oauth-1", identity=_oauth(1))
        assert profile.synthesized is True
        assert profile.role == ROLE_STAFF
        assert profile.email == "doctor1@clinic.test"
        assert await _count_users(backend) == 0

    async def test_schema_error_on_insert_synthesizes(self, backend: LocalBackend) -> None:
        async def bad_column(*args, **kwargs):
            return Result.fail(ErrorKind.SCHEMA, "column users.role does not exist", code="42703")

        resolver = ProfileResolver(_mock_auth(), _Wrapped(backend.tables, insert=bad_column))
        profile = await resolver.resolve("pw-1", identity=_password(1))
        assert profile.synthesized is True

    @pytest.mark.parametrize("kind", [ErrorKind.NETWORK, ErrorKind.UNKNOWN])
    async def test_other_errors_return_none_without_sign_out(self, backend: LocalBackend, kind: ErrorKind) -> None:
        async def failing(*args, **kwargs):
            return Result.fail(kind, "boom")

        auth = _mock_auth()
        resolver = ProfileResolver(auth, _Wrapped(backend.tables, select=failing))
        assert await resolver.resolve("pw-1", identity=_password(1)) is None
        auth.sign_out.assert_not_awaited()

    async def test_admin_count_failure_defaults_to_staff(self, backend: LocalBackend) -> None:
        async def no_count(*args, **kwargs):
            return Result.fail(ErrorKind.NETWORK, "timeout")

        resolver = ProfileResolver(_mock_auth(), _Wrapped(backend.tables, count=no_count))
        profile = await resolver.resolve("oauth-1", identity=_oauth(1))
        assert profile.role == ROLE_STAFF

    async def test_touch_last_login_failure_is_swallowed(self, backend: LocalBackend) -> None:
        async def failing(*args, **kwargs):
            return Result.fail(ErrorKind.NETWORK, "timeout")

        resolver = ProfileResolver(_mock_auth(), _Wrapped(backend.tables, update=failing))
        profile = await resolver.resolve("pw-1", identity=_password(1))
        assert (await resolver.touch_last_login(profile)).last_login_at is None

    def test_synthesized_profile_shape(self) -> None:
        profile = synthesize_profile(Identity(id="x", email="solo@clinic.test", provider="github"))
        assert profile.name == "solo"
        assert profile.oauth_provider == "github"
        assert profile.synthesized
