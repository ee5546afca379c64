"""
backend/base.py -- Contract for the external backend-as-a-service.

The dashboard talks to one collaborator that exposes two surfaces:

  AuthAPI  -- identity operations (password sign-in, sign-up, sign-out,
              current session, refresh, OAuth redirect + code exchange,
              current identity) and a session-change event stream.
  TableAPI -- row storage over named collections (select / insert / update /
              delete / count).

Every operation returns a Result carrying either data or a BackendError. The
error is a tagged variant: ErrorKind names the class of failure so call sites
can `match` on it and make the degrade-vs-fail policy visible where it is
applied, instead of burying it in nested try/except chains.

Implementations:
  backend/remote.py -- hosted GoTrue/PostgREST-compatible service over httpx.
  backend/local.py  -- prototype variant persisting to a local SQLite file.

Layer rule: backend/ imports from core/ and cache/ only.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from core.models import AuthResponse, Identity, Session

logger = logging.getLogger("clinicdesk.backend")

T = TypeVar("T")

# The row collections of the hosted schema.
TABLES = ("users", "patients", "treatments", "payments", "notifications")


# ---------------------------------------------------------------------------
# Errors and results
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    NETWORK = "network"  # transient connectivity failure
    AUTHORIZATION = "authorization"  # expired/invalid token, bad credentials, RLS denial
    SCHEMA = "schema"  # backend shape mismatch (missing table/column)
    CONFLICT = "conflict"  # unique-constraint violation
    RATE_LIMIT = "rate_limit"  # throttled by the service
    UNSUPPORTED = "unsupported"  # operation not offered by this backend
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class BackendError:
    kind: ErrorKind
    message: str
    code: str | None = None
    status: int | None = None

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}" + (f" ({self.code})" if self.code else "")


@dataclass
class Result(Generic[T]):
    """The {data, error} pair every backend call returns."""

    data: T | None = None
    error: BackendError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, code: str | None = None, status: int | None = None) -> Result:
        return cls(error=BackendError(kind=kind, message=message, code=code, status=status))


# ---------------------------------------------------------------------------
# Session-change events
# ---------------------------------------------------------------------------


class AuthEvent(str, Enum):
    INITIAL = "initial"
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    TOKEN_REFRESHED = "token_refreshed"


AuthListener = Callable[[AuthEvent, "Session | None"], Awaitable[None]]


class Subscription:
    """Handle returned by on_auth_state_change(); call unsubscribe() on teardown."""

    def __init__(self, listeners: list[AuthListener], listener: AuthListener) -> None:
        self._listeners = listeners
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener in self._listeners

    def unsubscribe(self) -> None:
        if self._listener in self._listeners:
            self._listeners.remove(self._listener)


# ---------------------------------------------------------------------------
# Auth surface
# ---------------------------------------------------------------------------


class AuthAPI(ABC):
    """Identity operations plus the session-change event stream.

    Listeners are awaited one after another, so by the time a sign-in call
    returns every subscriber has finished reacting to SIGNED_IN. A failing
    listener is logged and does not stop the others.
    """

    def __init__(self) -> None:
        self._listeners: list[AuthListener] = []

    def on_auth_state_change(self, listener: AuthListener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self._listeners, listener)

    async def _emit(self, event: AuthEvent, session: Session | None) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event, session)
            except Exception:
                logger.exception("Auth listener failed on %s", event.value)

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> Result[AuthResponse]: ...

    @abstractmethod
    async def sign_up(self, email: str, password: str, metadata: dict | None = None) -> Result[AuthResponse]: ...

    @abstractmethod
    async def sign_out(self) -> Result[None]:
        """End the current session. Local session state is cleared even when the call fails."""

    @abstractmethod
    async def get_session(self) -> Result[Session]:
        """Return the current, server-validated session (data=None when signed out)."""

    @abstractmethod
    async def refresh_session(self) -> Result[Session]: ...

    @abstractmethod
    async def get_user(self) -> Result[Identity]: ...

    @abstractmethod
    async def sign_in_with_oauth(self, provider: str, redirect_to: str) -> Result[str]:
        """Start the OAuth redirect flow. data is the URL to send the browser to."""

    @abstractmethod
    async def exchange_code_for_session(self, code: str) -> Result[AuthResponse]: ...


# ---------------------------------------------------------------------------
# Row storage surface
# ---------------------------------------------------------------------------


class TableAPI(ABC):
    """Row storage over named collections. Filters are equality matches."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> Result[list[dict]]: ...

    @abstractmethod
    async def insert(self, table: str, row: dict[str, Any]) -> Result[dict]: ...

    @abstractmethod
    async def update(self, table: str, filters: dict[str, Any], values: dict[str, Any]) -> Result[list[dict]]: ...

    @abstractmethod
    async def delete(self, table: str, filters: dict[str, Any]) -> Result[int]: ...

    @abstractmethod
    async def count(self, table: str, filters: dict[str, Any] | None = None) -> Result[int]: ...


class Backend(ABC):
    """Bundles the two surfaces of one backend deployment."""

    auth: AuthAPI
    tables: TableAPI

    @abstractmethod
    async def aclose(self) -> None: ...
