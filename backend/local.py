"""
backend/local.py -- Prototype backend persisting to a local SQLite database.

Implements the same AuthAPI / TableAPI contract as the hosted service, so the
dashboard can run fully offline with the identical data model.

Pattern: Repository + Data Mapper over SQLAlchemy Core (mirrors the hosted
schema). _row_to_identity is the mapper; callers never see SQL.

Security design decisions:
  Passwords: bcrypt, used directly. _dummy_hash enables timing equalization in
       sign_in_with_password() so response time does not reveal whether an
       email is registered.

  Tokens: python-jose HS256. Access and refresh tokens carry the identity id,
       a "typ" claim and an expiry. A refresh token is never accepted as an
       access token and vice versa.

  Blocking work (bcrypt, SQLite statements) goes through run_in_threadpool
       so a sign-in at full bcrypt cost does not stall the event loop. One
       lock per backend serializes statements on the shared connection.

  All queries use bound parameters. Table and column names are checked against
  the declared schema before any statement is built.

OAuth is not offered by this backend: the redirect flow needs the hosted
identity service. Both OAuth operations return an UNSUPPORTED error.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from fastapi.concurrency import run_in_threadpool
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from backend.base import AuthAPI, AuthEvent, Backend, ErrorKind, Result, TableAPI
from cache.store import LocalCache
from core.models import PASSWORD_PROVIDER, AuthResponse, Identity, Session, now_iso

logger = logging.getLogger("clinicdesk.backend.local")

_ALGORITHM = "HS256"
SESSION_KEY = "clinic.auth.session"

# ---------------------------------------------------------------------------
# Schema -- mirrors the hosted tables
# ---------------------------------------------------------------------------

_metadata = MetaData()


def _new_id() -> str:
    return str(uuid.uuid4())


_identities = Table(
    "identities",
    _metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for identities without a password
    Column("provider", String(30), nullable=False, server_default=PASSWORD_PROVIDER),
    Column("name", String(255)),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False, default=now_iso),
)

Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),
    Column("name", String(255), nullable=False),
    Column("role", String(10), nullable=False, server_default="staff"),
    Column("created_at", String(32), nullable=False, default=now_iso),
    Column("last_login_at", String(32)),
)

Table(
    "patients",
    _metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("name", String(255), nullable=False),
    Column("age", Integer, nullable=False),
    Column("contact_number", String(50), nullable=False),
    Column("registration_date", String(32), default=now_iso),
    Column("diagnoses", Text, nullable=False),
    Column("treatment", Text, nullable=False),
    Column("last_payment_date", String(32), default=now_iso),
    Column("payment_amount", Float, default=0),
    Column("payment_status", String(10), default="pending"),  # paid | pending | overdue
    Column("is_active", Boolean, default=True),
    Column("discharge_date", String(32)),
    Column("discharge_reason", Text),
    Column("created_at", String(32), default=now_iso),
    Column("updated_at", String(32), default=now_iso, onupdate=now_iso),
)

Table(
    "treatments",
    _metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("patient_id", String(36), nullable=False),
    Column("date", String(32), default=now_iso),
    Column("treatment_given", Text, nullable=False),
    Column("notes", Text),
    Column("therapist_name", String(255), nullable=False),
    Column("created_at", String(32), default=now_iso),
)

Table(
    "payments",
    _metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("patient_id", String(36), nullable=False),
    Column("amount", Float, nullable=False),
    Column("date", String(32), default=now_iso),
    Column("method", String(10), default="cash"),  # cash | card | insurance
    Column("status", String(10), default="completed"),  # completed | pending | failed
    Column("created_at", String(32), default=now_iso),
)

Table(
    "notifications",
    _metadata,
    Column("id", String(36), primary_key=True, default=_new_id),
    Column("patient_id", String(36), nullable=False),
    Column("message", Text, nullable=False),
    Column("type", String(10), default="payment"),  # payment | treatment | discharge
    Column("priority", String(10), default="medium"),  # low | medium | high
    Column("is_read", Boolean, default=False),
    Column("created_at", String(32), default=now_iso),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode (per connection; PRAGMAs are not pooled)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


class _SchemaMismatch(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def _classify(exc: SQLAlchemyError) -> Result:
    """Map a SQLAlchemy failure onto the backend error taxonomy.

    Codes follow the Postgres SQLSTATE values the hosted service reports so
    callers see the same codes from either backend.
    """
    detail = str(getattr(exc, "orig", None) or exc)
    if isinstance(exc, IntegrityError):
        if "UNIQUE" in detail.upper():
            return Result.fail(ErrorKind.CONFLICT, detail, code="23505", status=409)
        return Result.fail(ErrorKind.UNKNOWN, detail, code="23502", status=400)
    if isinstance(exc, (OperationalError, ProgrammingError)):
        lowered = detail.lower()
        if "no such table" in lowered:
            return Result.fail(ErrorKind.SCHEMA, detail, code="42P01", status=404)
        if "no such column" in lowered or "has no column" in lowered:
            return Result.fail(ErrorKind.SCHEMA, detail, code="42703", status=400)
    return Result.fail(ErrorKind.UNKNOWN, detail)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt, direct usage)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# ---------------------------------------------------------------------------
# Row storage
# ---------------------------------------------------------------------------


class LocalTables(TableAPI):
    """TableAPI over the local SQLite schema.

    Statements run in the threadpool under the backend's lock; SQLite has a
    single writer and StaticPool hands every thread the same connection.
    """

    def __init__(self, engine: Engine, lock: threading.Lock | None = None) -> None:
        self._engine = engine
        self._lock = lock or threading.Lock()

    def _table(self, name: str) -> Table:
        # identities is the auth service's private table, not a row collection
        if name == "identities" or name not in _metadata.tables:
            raise _SchemaMismatch(f"relation {name!r} does not exist", "42P01")
        return _metadata.tables[name]

    @staticmethod
    def _column(table: Table, name: str):
        if name not in table.c:
            raise _SchemaMismatch(f"column {table.name}.{name} does not exist", "42703")
        return table.c[name]

    def _where(self, table: Table, stmt, filters: dict[str, Any] | None):
        for col, value in (filters or {}).items():
            stmt = stmt.where(self._column(table, col) == value)
        return stmt

    def _check_values(self, table: Table, values: dict[str, Any]) -> None:
        for col in values:
            self._column(table, col)

    async def _run(self, work: Callable[[], Any]) -> Result:
        """Run `work` off the event loop and wrap its outcome in a Result."""

        def guarded() -> Result:
            try:
                with self._lock:
                    return Result(data=work())
            except _SchemaMismatch as exc:
                return Result.fail(ErrorKind.SCHEMA, str(exc), code=exc.code)
            except SQLAlchemyError as exc:
                return _classify(exc)

        return await run_in_threadpool(guarded)

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> Result[list[dict]]:
        def work() -> list[dict]:
            t = self._table(table)
            stmt = self._where(t, t.select(), filters)
            if order:
                col = self._column(t, order)
                stmt = stmt.order_by(col.desc() if descending else col)
            if limit is not None:
                stmt = stmt.limit(limit)
            with self._engine.connect() as conn:
                return [dict(r) for r in conn.execute(stmt).mappings().all()]

        return await self._run(work)

    async def insert(self, table: str, row: dict[str, Any]) -> Result[dict]:
        def work() -> dict:
            t = self._table(table)
            self._check_values(t, row)
            values = dict(row)
            values.setdefault("id", _new_id())
            with self._engine.connect() as conn:
                conn.execute(t.insert().values(**values))
                conn.commit()
                return dict(conn.execute(t.select().where(t.c.id == values["id"])).mappings().one())

        return await self._run(work)

    async def update(self, table: str, filters: dict[str, Any], values: dict[str, Any]) -> Result[list[dict]]:
        def work() -> list[dict]:
            t = self._table(table)
            self._check_values(t, values)
            with self._engine.connect() as conn:
                ids = [r.id for r in conn.execute(self._where(t, select(t.c.id), filters)).fetchall()]
                if not ids:
                    return []
                conn.execute(t.update().where(t.c.id.in_(ids)).values(**values))
                conn.commit()
                return [dict(r) for r in conn.execute(t.select().where(t.c.id.in_(ids))).mappings().all()]

        return await self._run(work)

    async def delete(self, table: str, filters: dict[str, Any]) -> Result[int]:
        def work() -> int:
            t = self._table(table)
            with self._engine.connect() as conn:
                result = conn.execute(self._where(t, t.delete(), filters))
                conn.commit()
                return result.rowcount

        return await self._run(work)

    async def count(self, table: str, filters: dict[str, Any] | None = None) -> Result[int]:
        def work() -> int:
            t = self._table(table)
            stmt = self._where(t, select(func.count()).select_from(t), filters)
            with self._engine.connect() as conn:
                return conn.execute(stmt).scalar() or 0

        return await self._run(work)


# ---------------------------------------------------------------------------
# Identity service
# ---------------------------------------------------------------------------


class LocalAuth(AuthAPI):
    """AuthAPI backed by the identities table and self-issued JWTs.

    The current session is mirrored into the LocalCache (when given) so a
    restarted process picks it up again, as a browser would from storage.
    """

    def __init__(
        self,
        engine: Engine,
        secret_key: str,
        storage: LocalCache | None = None,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
        bcrypt_rounds: int = 12,
        lock: threading.Lock | None = None,
    ) -> None:
        super().__init__()
        self._engine = engine
        self._lock = lock or threading.Lock()
        self._secret_key = secret_key
        self._storage = storage
        self._access_ttl = access_ttl
        self._refresh_ttl = refresh_ttl
        self._rounds = bcrypt_rounds
        # Timing equalization for unknown emails: same cost as a real check.
        self._dummy_hash = hash_password("clinicdesk_timing_dummy", rounds=bcrypt_rounds)
        self._session: Session | None = None
        if storage is not None:
            stored = storage.get(SESSION_KEY)
            if stored:
                self._session = Session.from_dict(stored)

    # -- helpers ---------------------------------------------------------

    def _store_session(self, session: Session | None) -> None:
        self._session = session
        if self._storage is None:
            return
        if session is None:
            self._storage.delete(SESSION_KEY)
        else:
            self._storage.set(SESSION_KEY, session.to_dict())

    def _encode(self, identity_id: str, typ: str, ttl: int) -> tuple[str, datetime]:
        expire = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        payload = {"sub": identity_id, "typ": typ, "exp": expire, "jti": uuid.uuid4().hex}
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM), expire

    def _decode(self, token: str, typ: str) -> str:
        """Return the identity id in a token. Raises JWTError on any failure."""
        payload = jwt.decode(token, self._secret_key, algorithms=[_ALGORITHM])
        if payload.get("typ") != typ or "sub" not in payload:
            raise JWTError(f"expected a {typ} token")
        return payload["sub"]

    def _issue(self, identity: Identity) -> Session:
        access, expires_at = self._encode(identity.id, "access", self._access_ttl)
        refresh, _ = self._encode(identity.id, "refresh", self._refresh_ttl)
        return Session(access_token=access, refresh_token=refresh, expires_at=expires_at, identity=identity)

    def _row_by_sync(self, criteria: dict):
        stmt = _identities.select()
        for col, value in criteria.items():
            stmt = stmt.where(_identities.c[col] == value)
        with self._lock, self._engine.connect() as conn:
            return conn.execute(stmt).fetchone()

    async def _row_by(self, **criteria):
        return await run_in_threadpool(self._row_by_sync, criteria)

    def _insert_sync(self, values: dict) -> None:
        with self._lock, self._engine.connect() as conn:
            conn.execute(_identities.insert().values(**values))
            conn.commit()

    # -- operations ------------------------------------------------------

    async def sign_in_with_password(self, email: str, password: str) -> Result[AuthResponse]:
        try:
            row = await self._row_by(email=email.strip().lower())
        except SQLAlchemyError as exc:
            return _classify(exc)
        if row is None or row.hashed_password is None:
            await run_in_threadpool(verify_password, password, self._dummy_hash)
            return Result.fail(ErrorKind.AUTHORIZATION, "Invalid login credentials", "invalid_credentials", 400)
        if not await run_in_threadpool(verify_password, password, row.hashed_password):
            return Result.fail(ErrorKind.AUTHORIZATION, "Invalid login credentials", "invalid_credentials", 400)

        identity = _row_to_identity(row)
        session = self._issue(identity)
        self._store_session(session)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return Result(data=AuthResponse(identity=identity, session=session))

    async def sign_up(self, email: str, password: str, metadata: dict | None = None) -> Result[AuthResponse]:
        metadata = metadata or {}
        hashed = await run_in_threadpool(hash_password, password, self._rounds)
        values = {
            "id": _new_id(),
            "email": email.strip().lower(),
            "hashed_password": hashed,
            "provider": PASSWORD_PROVIDER,
            "name": metadata.get("name"),
            "email_verified": 0,
            "created_at": now_iso(),
        }
        try:
            await run_in_threadpool(self._insert_sync, values)
        except IntegrityError:
            return Result.fail(ErrorKind.CONFLICT, "User already registered", "user_already_exists", 422)
        except SQLAlchemyError as exc:
            return _classify(exc)

        identity = Identity(
            id=values["id"],
            email=values["email"],
            provider=PASSWORD_PROVIDER,
            name=values["name"],
            email_verified=False,
            created_at=values["created_at"],
        )
        session = self._issue(identity)
        self._store_session(session)
        logger.info("Local identity created for %s", identity.email)
        await self._emit(AuthEvent.SIGNED_IN, session)
        return Result(data=AuthResponse(identity=identity, session=session))

    async def sign_out(self) -> Result[None]:
        self._store_session(None)
        await self._emit(AuthEvent.SIGNED_OUT, None)
        return Result()

    async def get_session(self) -> Result[Session]:
        if self._session is None:
            return Result(data=None)
        try:
            identity_id = self._decode(self._session.access_token, "access")
        except ExpiredSignatureError:
            return await self.refresh_session()
        except JWTError as exc:
            return Result.fail(ErrorKind.AUTHORIZATION, f"Invalid JWT: {exc}", "bad_jwt", 401)
        try:
            row = await self._row_by(id=identity_id)
        except SQLAlchemyError as exc:
            return _classify(exc)
        if row is None:
            return Result.fail(ErrorKind.AUTHORIZATION, "User from sub claim in JWT does not exist", "user_not_found", 403)
        self._session.identity = _row_to_identity(row)
        return Result(data=self._session)

    async def refresh_session(self) -> Result[Session]:
        if self._session is None:
            return Result.fail(ErrorKind.AUTHORIZATION, "Auth session missing", "session_not_found", 401)
        try:
            identity_id = self._decode(self._session.refresh_token, "refresh")
        except JWTError:
            return Result.fail(ErrorKind.AUTHORIZATION, "Invalid Refresh Token", "invalid_grant", 400)
        try:
            row = await self._row_by(id=identity_id)
        except SQLAlchemyError as exc:
            return _classify(exc)
        if row is None:
            return Result.fail(ErrorKind.AUTHORIZATION, "Invalid Refresh Token", "invalid_grant", 400)

        session = self._issue(_row_to_identity(row))
        self._store_session(session)
        await self._emit(AuthEvent.TOKEN_REFRESHED, session)
        return Result(data=session)

    async def get_user(self) -> Result[Identity]:
        if self._session is None:
            return Result.fail(ErrorKind.AUTHORIZATION, "Auth session missing", "session_not_found", 401)
        try:
            identity_id = self._decode(self._session.access_token, "access")
            row = await self._row_by(id=identity_id)
        except JWTError as exc:
            return Result.fail(ErrorKind.AUTHORIZATION, f"Invalid JWT: {exc}", "bad_jwt", 401)
        except SQLAlchemyError as exc:
            return _classify(exc)
        if row is None:
            return Result.fail(ErrorKind.AUTHORIZATION, "User not found", "user_not_found", 403)
        return Result(data=_row_to_identity(row))

    async def sign_in_with_oauth(self, provider: str, redirect_to: str) -> Result[str]:
        return Result.fail(ErrorKind.UNSUPPORTED, "OAuth sign-in requires the hosted backend", "provider_disabled", 400)

    async def exchange_code_for_session(self, code: str) -> Result[AuthResponse]:
        return Result.fail(ErrorKind.UNSUPPORTED, "OAuth sign-in requires the hosted backend", "provider_disabled", 400)


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class LocalBackend(Backend):
    """Local prototype backend.

    Usage:
        backend = LocalBackend("sqlite:///:memory:", secret_key=settings.secret_key)
        result = await backend.auth.sign_up("a@example.com", "secret1", {"name": "A"})
        rows = await backend.tables.select("users", {"id": result.data.identity.id})
        await backend.aclose()
    """

    def __init__(
        self,
        db_url: str,
        secret_key: str,
        storage: LocalCache | None = None,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
        bcrypt_rounds: int = 12,
    ) -> None:
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in db_url:
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite") and ":memory:" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        lock = threading.Lock()
        self.auth = LocalAuth(
            self.engine,
            secret_key,
            storage=storage,
            access_ttl=access_ttl,
            refresh_ttl=refresh_ttl,
            bcrypt_rounds=bcrypt_rounds,
            lock=lock,
        )
        self.tables = LocalTables(self.engine, lock)

    async def aclose(self) -> None:
        self.engine.dispose()


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        provider=row.provider or PASSWORD_PROVIDER,
        name=row.name,
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
    )
