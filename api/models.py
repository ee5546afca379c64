"""
API request and response models for the ClinicDesk auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: core/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.facade import MIN_PASSWORD_LENGTH
from core.models import Session, UserProfile

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    confirm_password is checked here so a typo never reaches the identity
    service; the facade repeats the length and name checks for callers that
    do not go through HTTP.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=120)
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=MIN_PASSWORD_LENGTH, max_length=128)
    confirm_password: str = Field(max_length=128)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("must be an email address")
        return value.lower()

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ProfileResponse(BaseModel):
    """The signed-in clinic user, as the dashboard sees it."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    role: str
    created_at: str
    last_login_at: Optional[str] = None
    oauth_provider: Optional[str] = None
    email_verified: Optional[bool] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            email=profile.email,
            name=profile.name,
            role=profile.role,
            created_at=profile.created_at,
            last_login_at=profile.last_login_at,
            oauth_provider=profile.oauth_provider,
            email_verified=profile.email_verified,
        )


class SessionResponse(BaseModel):
    """Response for GET /api/v1/auth/session.

    Tokens are never returned; only what the UI needs to decide what to show.
    """

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    demo_mode: bool = False
    stale: bool = False
    expires_at: Optional[str] = None
    profile: Optional[ProfileResponse] = None

    @classmethod
    def build(
        cls,
        authenticated: bool,
        profile: UserProfile | None,
        session: Session | None,
        demo_mode: bool,
        stale: bool,
    ) -> "SessionResponse":
        return cls(
            authenticated=authenticated,
            demo_mode=authenticated and demo_mode,
            stale=authenticated and stale,
            expires_at=session.expires_at.isoformat() if authenticated and session is not None else None,
            profile=ProfileResponse.from_profile(profile) if authenticated and profile else None,
        )


class RegisterResponse(BaseModel):
    """Response for POST /api/v1/auth/register.

    signed_in is False when the identity service requires email confirmation
    before it issues a session.
    """

    model_config = ConfigDict(frozen=True)

    registered: bool = True
    signed_in: bool
    profile: Optional[ProfileResponse] = None


class OAuthProviderInfo(BaseModel):
    """One OAuth provider button on the login screen."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    backend: str
