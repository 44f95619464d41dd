"""
auth/tokens.py -- Password hashing, JWT signing, and opaque-secret utilities.

Security design decisions:
  JWT: python-jose with an asymmetric algorithm (RS256 by default, ES256
       accepted). Tokens are signed with the private key; every relying
       service verifies with the public key only. decode_access_token() pins
       the accepted algorithm list to the configured one so an attacker
       cannot downgrade to "none" or to HS256-with-the-public-key.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether an email exists [C1].

  Opaque secrets (refresh tokens, OAuth state): secrets.token_urlsafe gives
       >= 256 bits of entropy. We store HMAC-SHA256(SECRET_KEY, raw) so lookup
       is O(1) and a leaked database does not yield usable tokens. bcrypt's
       intentional slowness is unnecessary for high-entropy values.

Layer rule: no imports from api/ or core/. Keys and secrets are passed in by
the caller (TokenAuthority), which owns the Settings.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import InvalidSignature, InvalidToken, MalformedToken, TokenExpired

if TYPE_CHECKING:
    from auth.models import CookieDirective, User
    from auth.store import UserStore

logger = logging.getLogger("gatekeeper.auth")

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    72 bytes of UTF-8 so two different long passwords can never collide.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt hash or over-long input -- never a match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gatekeeper_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate a local email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email or OAuth-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the User on success, None on any failure (including a disabled
    or soft-deleted account).
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active or user.deleted_at is not None:
        return None
    return user


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def encode_access_token(
    claims: dict[str, Any],
    private_key: str,
    algorithm: str,
    headers: dict[str, Any] | None = None,
) -> str:
    """Sign a claim set. The caller builds the claims; this only signs."""
    return jwt.encode(claims, private_key, algorithm=algorithm, headers=headers)


def decode_access_token(
    token: str,
    public_key: str,
    algorithm: str,
    issuer: str,
    audience: str,
) -> dict[str, Any]:
    """Verify signature, expiry, issuer and audience. Returns the claim dict.

    Raises:
        MalformedToken:   not a parseable JWS/JWT, or required claims missing.
        InvalidSignature: signature does not verify, or the header names an
                          algorithm other than the configured one.
        TokenExpired:     signature is valid but exp is in the past.
        InvalidToken:     signature is valid but iss/aud do not match.
    """
    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise MalformedToken() from exc

    try:
        payload = jwt.decode(token, public_key, algorithms=[algorithm], audience=audience, issuer=issuer)
    except ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except JWTClaimsError as exc:
        raise InvalidToken() from exc
    except JWTError as exc:
        raise InvalidSignature() from exc

    if payload.get("type") != "access":
        raise MalformedToken()
    for claim in ("sub", "role", "jti", "iat", "exp"):
        if claim not in payload:
            raise MalformedToken()
    return payload


# ---------------------------------------------------------------------------
# Opaque secrets
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return a URL-safe random token with 384 bits of entropy."""
    return secrets.token_urlsafe(48)


def hash_secret(secret_key: str, raw: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string.

    Deterministic, so the stores can look up by hash. Without secret_key an
    attacker holding the database cannot map rows back to usable tokens.
    """
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


def fingerprint(secret_key: str, user_agent: str | None) -> str | None:
    """Reduce a client descriptor (User-Agent) to a keyed hash for storage."""
    if not user_agent:
        return None
    return hash_secret(secret_key, f"fp:{user_agent}")


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def apply_cookie(response, directive: CookieDirective) -> None:
    """Write a CookieDirective onto a FastAPI/Starlette response.

    A directive with max_age=0 clears the cookie. Domain and path must match
    the values used when setting it, otherwise browsers keep the old cookie.
    """
    if directive.clears:
        response.delete_cookie(
            directive.name,
            domain=directive.domain,
            path=directive.path,
            secure=directive.secure,
            httponly=directive.httponly,
            samesite=directive.samesite,
        )
        return
    response.set_cookie(
        directive.name,
        value=directive.value,
        max_age=directive.max_age,
        domain=directive.domain,
        path=directive.path,
        secure=directive.secure,
        httponly=directive.httponly,
        samesite=directive.samesite,
    )
