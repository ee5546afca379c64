"""
auth/profiles.py -- Maps an authenticated identity to its application profile.

resolve() is the only writer of the users table in this package:

  1. select users by id
  2. found            -> return it, annotated with identity metadata
  3. not found        -> create it (role rule below) and return the new row
  4. insert conflict  -> another caller created it first; re-read and return
  5. authorization    -> sign the session out, return None
  6. schema mismatch  -> synthesize a profile from identity data (not persisted)
  7. network/unknown  -> return None

Role rule: a new profile is "admin" only when the identity came through an
OAuth provider AND no admin profile exists yet; everyone else is "staff".

Concurrency: two resolutions for the same new identity can both reach the
insert. The users.id uniqueness constraint lets exactly one succeed; the other
takes the conflict path and returns the winner's row. Two different new OAuth
identities are serialized through the admin count and insert, so only one of
them can see zero admins.
"""

from __future__ import annotations

import asyncio
import logging

from backend.base import AuthAPI, BackendError, ErrorKind, Result, TableAPI
from core.models import ROLE_ADMIN, ROLE_STAFF, Identity, UserProfile, now_iso

logger = logging.getLogger("clinicdesk.auth.profiles")

USERS_TABLE = "users"


class ProfileResolver:
    def __init__(self, auth: AuthAPI, tables: TableAPI) -> None:
        self._auth = auth
        self._tables = tables
        self._bootstrap_lock = asyncio.Lock()

    async def resolve(self, identity_id: str, identity: Identity | None = None) -> UserProfile | None:
        found = await self._tables.select(USERS_TABLE, {"id": identity_id}, limit=1)
        if not found.ok:
            return await self._on_error(found.error, identity_id, identity)
        if found.data:
            return _annotate(_row_to_profile(found.data[0]), identity)

        if identity is None:
            fetched = await self._auth.get_user()
            if not fetched.ok:
                return await self._on_error(fetched.error, identity_id, None)
            identity = fetched.data
        return await self.create_profile(identity)

    async def create_profile(self, identity: Identity, name: str | None = None) -> UserProfile | None:
        if identity.is_oauth:
            async with self._bootstrap_lock:
                inserted, role = await self._insert_profile(identity, name)
        else:
            inserted, role = await self._insert_profile(identity, name)
        if inserted.ok:
            logger.info("Created %s profile for %s", role, identity.email)
            return _annotate(_row_to_profile(inserted.data), identity)

        match inserted.error.kind:
            case ErrorKind.CONFLICT:
                logger.info("Profile for %s created concurrently; re-reading", identity.email)
                again = await self._tables.select(USERS_TABLE, {"id": identity.id}, limit=1)
                if again.ok and again.data:
                    return _annotate(_row_to_profile(again.data[0]), identity)
                if again.ok:
                    logger.warning("Conflict on insert but no profile row for %s", identity.id)
                    return None
                return await self._on_error(again.error, identity.id, identity)
            case _:
                return await self._on_error(inserted.error, identity.id, identity)

    async def _insert_profile(self, identity: Identity, name: str | None) -> tuple[Result, str]:
        role = await self._role_for(identity)
        row = {
            "id": identity.id,
            "email": identity.email,
            "name": name or identity.name or identity.email.split("@")[0],
            "role": role,
            "created_at": now_iso(),
        }
        return await self._tables.insert(USERS_TABLE, row), role

    async def touch_last_login(self, profile: UserProfile) -> UserProfile:
        """Stamp last_login_at. Best effort: failures are logged, never raised."""
        if profile.synthesized:
            return profile
        stamp = now_iso()
        result = await self._tables.update(USERS_TABLE, {"id": profile.id}, {"last_login_at": stamp})
        if not result.ok:
            logger.debug("last_login_at not updated for %s: %s", profile.id, result.error)
            return profile
        profile.last_login_at = stamp
        return profile

    async def list_profiles(self) -> list[UserProfile] | None:
        """Every stored profile, oldest first. None when the table cannot be read."""
        result = await self._tables.select(USERS_TABLE, order="created_at")
        if not result.ok:
            logger.warning("Could not list profiles: %s", result.error)
            return None
        return [_row_to_profile(row) for row in result.data]

    async def _role_for(self, identity: Identity) -> str:
        """Admin only for an OAuth identity while no admin exists.

        The count and the insert that follows are two separate calls. Within
        this process create_profile() serializes them for OAuth identities;
        processes sharing one hosted project can still race, so the
        single-bootstrap-admin rule is best effort across processes.
        """
        if not identity.is_oauth:
            return ROLE_STAFF
        admins = await self._tables.count(USERS_TABLE, {"role": ROLE_ADMIN})
        if not admins.ok:
            logger.warning("Could not count admins (%s); defaulting to staff", admins.error)
            return ROLE_STAFF
        return ROLE_ADMIN if admins.data == 0 else ROLE_STAFF

    async def _on_error(
        self, error: BackendError, identity_id: str, identity: Identity | None
    ) -> UserProfile | None:
        match error.kind:
            case ErrorKind.AUTHORIZATION:
                logger.warning("Authorization failure resolving profile %s: %s", identity_id, error)
                await self._auth.sign_out()
                return None
            case ErrorKind.SCHEMA:
                if identity is None:
                    fetched = await self._auth.get_user()
                    identity = fetched.data if fetched.ok else None
                if identity is None:
                    logger.error("Schema mismatch and no identity data for %s: %s", identity_id, error)
                    return None
                logger.warning("Schema mismatch (%s); using synthesized profile for %s", error, identity.email)
                return synthesize_profile(identity)
            case _:
                logger.error("Profile resolution failed for %s: %s", identity_id, error)
                return None


def synthesize_profile(identity: Identity) -> UserProfile:
    """Build a usable staff profile from identity data alone. Never persisted."""
    return UserProfile(
        id=identity.id,
        email=identity.email,
        name=identity.name or identity.email.split("@")[0],
        role=ROLE_STAFF,
        created_at=identity.created_at or now_iso(),
        oauth_provider=identity.provider if identity.is_oauth else None,
        email_verified=identity.email_verified,
        synthesized=True,
    )


def _annotate(profile: UserProfile, identity: Identity | None) -> UserProfile:
    if identity is not None:
        profile.oauth_provider = identity.provider if identity.is_oauth else None
        profile.email_verified = identity.email_verified
    return profile


def _row_to_profile(row: dict) -> UserProfile:
    return UserProfile(
        id=str(row["id"]),
        email=row.get("email") or "",
        name=row.get("name") or "",
        role=row.get("role") or ROLE_STAFF,
        created_at=str(row.get("created_at") or ""),
        last_login_at=row.get("last_login_at"),
    )
