"""
core/models.py -- Domain dataclasses shared by the backend clients and auth/.

Pure data containers. The only behavior kept here is shape conversion
(to_dict / from_dict for the local cache) and trivial derived values.

Layer rule: core/ is the kernel. No imports from api/, web/, auth/, backend/,
or cache/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLES = (ROLE_ADMIN, ROLE_STAFF)

# Identity provider for email/password sign-ups. Any other provider value is
# an OAuth provider.
PASSWORD_PROVIDER = "email"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()


@dataclass
class Identity:
    """The auth service's record of who is signed in.

    Distinct from UserProfile: an identity can exist without a profile row
    (e.g. between sign-up and profile creation).
    """

    id: str
    email: str
    provider: str = PASSWORD_PROVIDER
    name: str | None = None
    email_verified: bool = False
    created_at: str | None = None

    @property
    def is_oauth(self) -> bool:
        return self.provider != PASSWORD_PROVIDER


@dataclass
class Session:
    """Access/refresh token pair issued by the auth service."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    identity: Identity

    def remaining(self, now: datetime | None = None) -> timedelta:
        return self.expires_at - (now or utcnow())

    def to_dict(self) -> dict:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Session:
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            identity=Identity(**data["identity"]),
        )


@dataclass
class AuthResponse:
    """Result of sign-in / sign-up.

    session is None when the service created the identity but requires email
    confirmation before issuing tokens.
    """

    identity: Identity
    session: Session | None = None


@dataclass
class UserProfile:
    """Application-level user record keyed by identity id.

    oauth_provider and email_verified are annotations copied from the identity
    at resolution time; they are not columns of the users table.

    synthesized marks a profile built from identity data alone when the
    backend schema is unusable. Such a profile is never written anywhere.
    """

    id: str
    email: str
    name: str
    role: str  # "admin" | "staff"
    created_at: str
    last_login_at: str | None = None
    oauth_provider: str | None = None
    email_verified: bool | None = None
    synthesized: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def has_role(self, required: str | None) -> bool:
        """Admin satisfies every role requirement."""
        if required is None:
            return True
        return self.role == required or self.is_admin

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> UserProfile:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RateLimitRecord:
    identifier: str
    action: str
    attempts: int
    window_start: float  # epoch seconds
    failures: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProtectedView:
    """A dashboard route gated by the authentication check."""

    path: str
    name: str
    required_role: str | None = None
