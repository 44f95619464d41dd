"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the token authority and routes do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Provider(str, Enum):
    google = "google"
    github = "github"
    microsoft = "microsoft"


@dataclass
class User:
    """The identity anchor every credential resolves to.

    email is stored lower-cased so uniqueness is case-insensitive.
    hashed_password is None for OAuth-only users; such users always have at
    least one OAuthAccount (created in the same transaction).
    deleted_at is set by soft delete; the row is kept so audit references and
    revoked refresh tokens still point somewhere.
    """

    email: str
    role: str
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    email_verified: bool = False
    first_name: str = ""
    last_name: str = ""
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None
    is_active: bool = True
    deleted_at: str | None = None


@dataclass
class OAuthAccount:
    """Link between a User and one provider identity.

    (provider, provider_user_id) is globally unique. email is the address the
    provider reported at link time, kept for display only.
    """

    user_id: int
    provider: str
    provider_user_id: str
    email: str | None = None
    id: int | None = None
    linked_at: str | None = None


@dataclass
class RefreshToken:
    """Persisted refresh-token row. The raw token is never stored.

    family_id is the id of the first token in the rotation chain; every
    rotated descendant carries the same value so a detected reuse can revoke
    the whole chain with one UPDATE.
    """

    id: str
    user_id: int
    token_hash: str
    family_id: str
    issued_at: str
    expires_at: str
    rotated_from: str | None = None
    revoked: bool = False
    revoked_at: str | None = None
    revoke_reason: str | None = None
    fingerprint: str | None = None


@dataclass
class OAuthState:
    """Server-side record binding an OAuth state value to its flow context."""

    provider: str
    return_url: str
    code_verifier: str
    expires_at: str
    link_user_id: int | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Verified access-token claim set."""

    sub: str
    role: str
    jti: str
    iat: int
    exp: int
    sid: str | None = None

    @property
    def user_id(self) -> int:
        return int(self.sub)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class ProviderProfile:
    """Normalized identity returned by any OAuth provider."""

    provider: str
    provider_user_id: str
    email: str | None
    email_verified: bool
    first_name: str = ""
    last_name: str = ""


@dataclass(frozen=True)
class CookieDirective:
    """Instruction for the HTTP layer to set or clear one cookie."""

    name: str
    value: str
    max_age: int
    domain: str | None = None
    path: str = "/"
    httponly: bool = True
    secure: bool = True
    samesite: str = "lax"

    @property
    def clears(self) -> bool:
        return self.max_age == 0


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: TokenPair
    cookies: list[CookieDirective] = field(default_factory=list)
