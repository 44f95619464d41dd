"""
auth/token_store.py -- Persistence for refresh tokens and OAuth state.

Both stores share the engine and MetaData defined in auth/store.py.

Concurrency model:
  There are no in-process locks. Every mutation that must be race-safe is a
  single conditional statement inside one engine.begin() transaction:

    rotate()   UPDATE refresh_tokens SET revoked=1 WHERE id=:id AND revoked=0
               then INSERT the successor, same transaction. rowcount 0 means
               another caller consumed the token first; the successor is not
               written and the caller handles it as reuse.

    consume()  DELETE FROM oauth_states WHERE state_hash=:h. Only the caller
               whose DELETE removed the row gets the state back, so a state
               value can complete at most one callback.

  This holds across processes and hosts because the database, not Python,
  serializes the writes.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.engine import Engine

from auth.models import OAuthState, RefreshToken
from auth.store import now_iso, oauth_states, refresh_tokens


class RefreshTokenStore:
    """Repository for RefreshToken rows. Owned exclusively by TokenAuthority."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def insert(self, token: RefreshToken) -> None:
        with self.engine.begin() as conn:
            conn.execute(refresh_tokens.insert().values(**_token_values(token)))

    def get_by_hash(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_token(row) if row is not None else None

    def get_by_id(self, token_id: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.id == token_id)).fetchone()
        return _row_to_token(row) if row is not None else None

    def rotate(self, old_id: str, successor: RefreshToken) -> bool:
        """Atomically revoke old_id and insert its successor.

        Returns False, writing nothing, if old_id was already revoked by the
        time the conditional UPDATE ran.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.id == old_id) & (refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now_iso(), revoke_reason="rotated")
            )
            if result.rowcount != 1:
                return False
            conn.execute(refresh_tokens.insert().values(**_token_values(successor)))
        return True

    def revoke(self, token_hash: str, reason: str) -> bool:
        """Revoke one token by hash. Idempotent; returns True only on a state change."""
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.token_hash == token_hash) & (refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now_iso(), revoke_reason=reason)
            )
        return result.rowcount > 0

    def revoke_family(self, family_id: str, reason: str) -> int:
        """Revoke every still-active token in a rotation chain. Returns the count."""
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.family_id == family_id) & (refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now_iso(), revoke_reason=reason)
            )
        return result.rowcount

    def revoke_all_for_user(self, user_id: int, reason: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.user_id == user_id) & (refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now_iso(), revoke_reason=reason)
            )
        return result.rowcount

    def list_active(self, user_id: int) -> list[RefreshToken]:
        """Return non-revoked, non-expired tokens for a user (newest first)."""
        now = now_iso()
        with self.engine.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where(
                    (refresh_tokens.c.user_id == user_id)
                    & (refresh_tokens.c.revoked == 0)
                    & (refresh_tokens.c.expires_at > now)
                )
                .order_by(refresh_tokens.c.issued_at.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def list_family(self, family_id: str) -> list[RefreshToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where(refresh_tokens.c.family_id == family_id)
                .order_by(refresh_tokens.c.issued_at)
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def purge_expired(self, before: str) -> int:
        """Delete rows whose expires_at is earlier than before. Maintenance only."""
        with self.engine.begin() as conn:
            result = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at < before))
        return result.rowcount


class OAuthStateStore:
    """Single-use, short-lived OAuth state records keyed by HMAC of the state."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def put(self, state_hash: str, state: OAuthState) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                oauth_states.insert().values(
                    state_hash=state_hash,
                    provider=state.provider,
                    return_url=state.return_url,
                    code_verifier=state.code_verifier,
                    link_user_id=state.link_user_id,
                    expires_at=state.expires_at,
                )
            )

    def consume(self, state_hash: str) -> OAuthState | None:
        """Fetch and delete a state in one transaction.

        Returns None if the state never existed or a concurrent callback
        already consumed it. Expiry is checked by the caller so it can log
        the distinct reason.
        """
        with self.engine.begin() as conn:
            row = conn.execute(select(oauth_states).where(oauth_states.c.state_hash == state_hash)).fetchone()
            if row is None:
                return None
            deleted = conn.execute(oauth_states.delete().where(oauth_states.c.state_hash == state_hash))
            if deleted.rowcount != 1:
                return None
        return OAuthState(
            provider=row.provider,
            return_url=row.return_url,
            code_verifier=row.code_verifier,
            link_user_id=row.link_user_id,
            expires_at=row.expires_at,
        )

    def purge_expired(self, before: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(oauth_states.delete().where(oauth_states.c.expires_at < before))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _token_values(token: RefreshToken) -> dict:
    return {
        "id": token.id,
        "user_id": token.user_id,
        "token_hash": token.token_hash,
        "family_id": token.family_id,
        "rotated_from": token.rotated_from,
        "issued_at": token.issued_at,
        "expires_at": token.expires_at,
        "revoked": 1 if token.revoked else 0,
        "revoked_at": token.revoked_at,
        "revoke_reason": token.revoke_reason,
        "fingerprint": token.fingerprint,
    }


def _row_to_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        family_id=row.family_id,
        rotated_from=row.rotated_from,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        revoke_reason=row.revoke_reason,
        fingerprint=row.fingerprint,
    )
