"""
API request and response models for Gatekeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import RefreshToken, TokenClaims, TokenPair, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register.

    Password length is re-checked in SSOCoordinator.register() against the
    72-byte bcrypt limit; this model only bounds the character count.
    The password is kept exactly as sent so login compares the same bytes.
    """

    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=72)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)

    @field_validator("email", "first_name", "last_name", mode="before")
    @classmethod
    def strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=1024)


class RefreshRequest(BaseModel):
    """Body for /auth/refresh and /auth/logout. Browsers send the cookie instead."""

    refresh_token: Optional[str] = Field(default=None, max_length=512)


class ValidateRequest(BaseModel):
    token: str = Field(min_length=1, max_length=8192)


class RoleUpdate(BaseModel):
    """Request body for PATCH /users/{id}/role."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: str = Field(min_length=1, max_length=50)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Body of POST /auth/login. The refresh token travels only in the HttpOnly cookie."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "LoginResponse":
        return cls(access_token=pair.access_token, token_type=pair.token_type, expires_in=pair.expires_in)


class TokenResponse(BaseModel):
    """Token pair returned by refresh.

    The rotated refresh token is set as an HttpOnly cookie too; non-browser
    clients that sent it in the body read the body copy.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    refresh_expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_token=pair.refresh_token,
            refresh_expires_in=pair.refresh_expires_in,
        )


class UserResponse(BaseModel):
    """Public view of a User. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    email_verified: bool
    first_name: str
    last_name: str
    role: str
    is_active: bool
    created_at: Optional[str]
    last_login: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Factory Method: mapping lives next to the output model, not in routes."""
        return cls(
            id=user.id,
            email=user.email,
            email_verified=user.email_verified,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class MeResponse(UserResponse):
    """GET /auth/me: the user plus linked providers and effective permissions."""

    providers: list[str] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)
    has_password: bool = False


class ClaimsResponse(BaseModel):
    """POST /auth/validate: verified claims of an access token."""

    model_config = ConfigDict(frozen=True)

    valid: bool = True
    sub: str
    role: str
    jti: str
    iat: int
    exp: int
    sid: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "ClaimsResponse":
        return cls(
            sub=claims.sub,
            role=claims.role,
            jti=claims.jti,
            iat=claims.iat,
            exp=claims.exp,
            sid=claims.sid,
        )


class SessionResponse(BaseModel):
    """One live refresh-token chain. Hashes and raw tokens are never exposed."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    issued_at: str
    expires_at: str
    current: bool = False

    @classmethod
    def from_token(cls, token: RefreshToken, current_sid: Optional[str] = None) -> "SessionResponse":
        return cls(
            session_id=token.family_id,
            issued_at=token.issued_at,
            expires_at=token.expires_at,
            current=token.family_id == current_sid,
        )


class ProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class AuthorizationURLResponse(BaseModel):
    """POST /auth/oauth/{provider}/link: where the browser must go next."""

    model_config = ConfigDict(frozen=True)

    authorization_url: str


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
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
