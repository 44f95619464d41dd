"""
auth/authority.py -- Token Authority: issue, verify, rotate, revoke.

The authority exclusively owns the RefreshToken lifecycle and access-token
minting/verification. Nothing else writes refresh_tokens.

Access tokens are stateless signed JWTs (short TTL). verify_access_token() is
a pure function of the token and the public key: no database, no locks.

Refresh tokens are opaque random strings, persisted as HMAC hashes and
organized into rotation chains (families):

    login ──► T1 ──rotate──► T2 ──rotate──► T3 ...
              family_id = T1.id for every token in the chain

Each rotation consumes the presented token and emits its successor in one
conditional transaction (see RefreshTokenStore.rotate). Presenting a token
that is already revoked means someone replayed it: either the attacker or the
legitimate client is holding a stale copy. We cannot tell which, so the
whole family is revoked and both parties must sign in again.

Layer rule: no imports from api/. Settings are injected by the caller.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import jwk

from auth.errors import RefreshTokenExpired, RefreshTokenNotFound, ReuseDetected
from auth.models import RefreshToken, TokenClaims, TokenPair
from auth.store import now_iso
from auth.tokens import decode_access_token, encode_access_token, generate_opaque_token, hash_secret

if TYPE_CHECKING:
    from core.config import Settings

    from auth.store import UserStore
    from auth.token_store import RefreshTokenStore

logger = logging.getLogger("gatekeeper.auth")
security_logger = logging.getLogger("gatekeeper.security")


class TokenAuthority:
    """Issues and verifies access tokens; rotates and revokes refresh tokens.

    Usage:
        authority = TokenAuthority(settings, RefreshTokenStore(engine), UserStore(engine))
        pair = authority.issue_token_pair(user.id, user.role)
        claims = authority.verify_access_token(pair.access_token)
        pair = authority.rotate_refresh_token(pair.refresh_token)
    """

    def __init__(self, settings: Settings, token_store: RefreshTokenStore, user_store: UserStore) -> None:
        self._settings = settings
        self._tokens = token_store
        self._users = user_store
        # Key id: short digest of the public key so relying services can pick
        # the right key from the JWKS during a key rollover.
        self.key_id = hashlib.sha256(settings.jwt_public_key.encode()).hexdigest()[:16]

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def _sign_access_token(self, user_id: int, role: str, session_id: str | None) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": str(user_id),
            "role": role,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._settings.access_token_ttl_seconds)).timestamp()),
            "jti": uuid.uuid4().hex,
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
            "type": "access",
        }
        if session_id:
            claims["sid"] = session_id
        return encode_access_token(
            claims, self._settings.jwt_private_key, self._settings.jwt_algorithm, headers={"kid": self.key_id}
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises TokenExpired, InvalidSignature, MalformedToken (or InvalidToken
        for an issuer/audience mismatch). Pure: performs no I/O.
        """
        payload = decode_access_token(
            token,
            self._settings.jwt_public_key,
            self._settings.jwt_algorithm,
            issuer=self._settings.jwt_issuer,
            audience=self._settings.jwt_audience,
        )
        return _payload_to_claims(payload)

    def jwks(self) -> dict[str, Any]:
        """Public verification key as a JSON Web Key Set for relying services."""
        key = jwk.construct(self._settings.jwt_public_key, self._settings.jwt_algorithm).to_dict()
        key.update({"kid": self.key_id, "use": "sig", "alg": self._settings.jwt_algorithm})
        return {"keys": [key]}

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_token_pair(self, user_id: int, role: str, fingerprint: str | None = None) -> TokenPair:
        """Mint an access token and start a new refresh-token chain.

        Side effect: exactly one new refresh_tokens row with rotated_from=None.
        """
        raw = generate_opaque_token()
        token_id = uuid.uuid4().hex
        self._tokens.insert(
            RefreshToken(
                id=token_id,
                user_id=user_id,
                token_hash=hash_secret(self._settings.secret_key, raw),
                family_id=token_id,
                issued_at=now_iso(),
                expires_at=self._refresh_expiry(),
                fingerprint=fingerprint,
            )
        )
        logger.info("Issued token pair for user %s (session %s)", user_id, token_id)
        return TokenPair(
            access_token=self._sign_access_token(user_id, role, token_id),
            refresh_token=raw,
            expires_in=self._settings.access_token_ttl_seconds,
            refresh_expires_in=self._settings.refresh_token_ttl_seconds,
        )

    def _refresh_expiry(self) -> str:
        expires = datetime.now(timezone.utc) + timedelta(seconds=self._settings.refresh_token_ttl_seconds)
        return expires.isoformat(timespec="microseconds")

    # ------------------------------------------------------------------
    # Rotate
    # ------------------------------------------------------------------

    def rotate_refresh_token(self, raw: str, fingerprint: str | None = None) -> TokenPair:
        """Consume a refresh token and return a new pair from the same chain.

        Raises:
            RefreshTokenNotFound: unknown token, or its user is gone/disabled.
            RefreshTokenExpired:  token is past expires_at.
            ReuseDetected:        token was already revoked, or a concurrent
                                  rotation consumed it first. The whole chain
                                  is revoked before raising.
        """
        current = self._tokens.get_by_hash(hash_secret(self._settings.secret_key, raw))
        if current is None:
            raise RefreshTokenNotFound()

        if current.revoked:
            self._handle_reuse(current, "revoked token presented")
        if current.expires_at <= now_iso():
            raise RefreshTokenExpired()

        user = self._users.get_by_id(current.user_id)
        if user is None or not user.is_active or user.deleted_at is not None:
            self._tokens.revoke_family(current.family_id, "user_inactive")
            raise RefreshTokenNotFound()

        if fingerprint and current.fingerprint and fingerprint != current.fingerprint:
            # Browsers change User-Agent on upgrade, so this is logged, not enforced.
            security_logger.warning(
                "Refresh token %s presented from a different client fingerprint (user %s)", current.id, user.id
            )

        raw_next = generate_opaque_token()
        successor = RefreshToken(
            id=uuid.uuid4().hex,
            user_id=current.user_id,
            token_hash=hash_secret(self._settings.secret_key, raw_next),
            family_id=current.family_id,
            rotated_from=current.id,
            issued_at=now_iso(),
            expires_at=self._refresh_expiry(),
            fingerprint=current.fingerprint,
        )
        if not self._tokens.rotate(current.id, successor):
            self._handle_reuse(current, "concurrent rotation lost the race")

        logger.info("Rotated refresh token %s -> %s (user %s)", current.id, successor.id, user.id)
        return TokenPair(
            # Role is re-read from the store so role changes apply at next refresh.
            access_token=self._sign_access_token(user.id, user.role, current.family_id),
            refresh_token=raw_next,
            expires_in=self._settings.access_token_ttl_seconds,
            refresh_expires_in=self._settings.refresh_token_ttl_seconds,
        )

    def _handle_reuse(self, token: RefreshToken, why: str) -> None:
        revoked = self._tokens.revoke_family(token.family_id, "reuse_detected")
        security_logger.warning(
            "Refresh token reuse detected: token=%s family=%s user=%s (%s); revoked %d active token(s)",
            token.id,
            token.family_id,
            token.user_id,
            why,
            revoked,
        )
        raise ReuseDetected()

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke_refresh_token(self, raw: str) -> bool:
        """Revoke one refresh token (logout). Idempotent; unknown tokens are ignored."""
        revoked = self._tokens.revoke(hash_secret(self._settings.secret_key, raw), "logout")
        if revoked:
            logger.info("Refresh token revoked on logout")
        return revoked

    def revoke_all_for_user(self, user_id: int, reason: str = "revoke_all") -> int:
        """Revoke every active refresh token a user holds. Idempotent."""
        count = self._tokens.revoke_all_for_user(user_id, reason)
        logger.info("Revoked %d refresh token(s) for user %s (%s)", count, user_id, reason)
        return count

    # ------------------------------------------------------------------
    # Maintenance / introspection
    # ------------------------------------------------------------------

    def user_sessions(self, user_id: int) -> list[RefreshToken]:
        """Active refresh tokens for a user; one per live session chain."""
        return self._tokens.list_active(user_id)

    def purge_expired(self, older_than: timedelta | None = None) -> int:
        """Delete refresh tokens that expired more than older_than ago.

        Expiry is already enforced lazily on use; this only reclaims space.
        Keeping recently expired rows around preserves reuse evidence.
        """
        cutoff = datetime.now(timezone.utc) - (older_than or timedelta(0))
        purged = self._tokens.purge_expired(cutoff.isoformat(timespec="microseconds"))
        logger.info("Purged %d expired refresh token(s)", purged)
        return purged


def _payload_to_claims(payload: dict[str, Any]) -> TokenClaims:
    return TokenClaims(
        sub=str(payload["sub"]),
        role=str(payload["role"]),
        jti=str(payload["jti"]),
        iat=int(payload["iat"]),
        exp=int(payload["exp"]),
        sid=payload.get("sid"),
    )
