"""
tests/test_store.py -- Unit tests for UserStore, RefreshTokenStore and OAuthStateStore.

Uses the same named shared-memory SQLite engine as the service tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import EmailExists, LastCredential, ProviderAlreadyLinked
from auth.models import OAuthAccount, OAuthState, RefreshToken, User
from auth.store import now_iso
from tests.helpers import add_user


def _later(seconds: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat(timespec="microseconds")


def _token(token_id: str, user_id: int, family_id: str | None = None, expires_in: int = 3600) -> RefreshToken:
    return RefreshToken(
        id=token_id,
        user_id=user_id,
        token_hash=f"hash-{token_id}",
        family_id=family_id or token_id,
        issued_at=now_iso(),
        expires_at=_later(expires_in),
    )


class TestUserStore:
    def test_email_lookup_is_case_insensitive(self, user_store):
        created = add_user(user_store, "  Mixed.Case@Company.COM ")
        assert created.email == "mixed.case@company.com"
        assert user_store.get_by_email("MIXED.case@company.com").id == created.id

    def test_duplicate_email_raises(self, user_store):
        add_user(user_store, "dup@company.com")
        with pytest.raises(EmailExists):
            add_user(user_store, "Dup@Company.com")

    def test_create_oauth_user_writes_both_rows(self, user_store):
        user_id = user_store.create_oauth_user(
            User(email="o@company.com", role="user", email_verified=True),
            OAuthAccount(user_id=0, provider="google", provider_user_id="g-9", email="o@company.com"),
        )
        assert user_store.get_by_oauth("google", "g-9").id == user_id
        assert user_store.get_by_id(user_id).hashed_password is None

    def test_create_oauth_user_is_atomic(self, user_store):
        """A taken provider identity must not leave a credential-less user behind."""
        owner = add_user(user_store, "owner@company.com")
        user_store.link_oauth(OAuthAccount(user_id=owner.id, provider="google", provider_user_id="g-9"))
        with pytest.raises(ProviderAlreadyLinked):
            user_store.create_oauth_user(
                User(email="new@company.com", role="user", email_verified=True),
                OAuthAccount(user_id=0, provider="google", provider_user_id="g-9"),
            )
        assert user_store.get_by_email("new@company.com") is None
        assert user_store.count_users() == 1

    def test_one_link_per_provider_per_user(self, user_store):
        user = add_user(user_store, "a@company.com")
        user_store.link_oauth(OAuthAccount(user_id=user.id, provider="github", provider_user_id="1"))
        with pytest.raises(ProviderAlreadyLinked):
            user_store.link_oauth(OAuthAccount(user_id=user.id, provider="github", provider_user_id="2"))

    def test_update_user(self, user_store):
        user = add_user(user_store, "a@company.com")
        assert user_store.update_user(user.id, role="moderator", email_verified=True)
        updated = user_store.get_by_id(user.id)
        assert updated.role == "moderator"
        assert updated.email_verified is True
        assert user_store.update_user(9999, role="admin") is False

    def test_soft_delete_keeps_row(self, user_store):
        user = add_user(user_store, "gone@company.com")
        assert user_store.soft_delete_user(user.id) is True
        assert user_store.soft_delete_user(user.id) is False
        row = user_store.get_by_id(user.id)
        assert row.deleted_at is not None
        assert row.is_active is False
        assert user_store.list_users() == []
        assert len(user_store.list_users(include_deleted=True)) == 1

    def test_unlink_last_credential(self, user_store):
        user_id = user_store.create_oauth_user(
            User(email="o@company.com", role="user", email_verified=True),
            OAuthAccount(user_id=0, provider="google", provider_user_id="g-9"),
        )
        with pytest.raises(LastCredential):
            user_store.unlink_oauth(user_id, "google")
        user_store.link_oauth(OAuthAccount(user_id=user_id, provider="github", provider_user_id="gh-9"))
        assert user_store.unlink_oauth(user_id, "google") is True
        assert user_store.unlink_oauth(user_id, "google") is False


class TestRefreshTokenStore:
    def test_rotate_succeeds_once(self, user_store, token_store):
        user = add_user(user_store, "a@company.com")
        token_store.insert(_token("t1", user.id))
        assert token_store.rotate("t1", _token("t2", user.id, family_id="t1")) is True
        assert token_store.rotate("t1", _token("t3", user.id, family_id="t1")) is False
        assert token_store.get_by_id("t3") is None
        assert token_store.get_by_id("t1").revoke_reason == "rotated"

    def test_revoke_family_and_list_active(self, user_store, token_store):
        user = add_user(user_store, "a@company.com")
        token_store.insert(_token("f1", user.id))
        token_store.rotate("f1", _token("f2", user.id, family_id="f1"))
        token_store.insert(_token("other", user.id))
        assert token_store.revoke_family("f1", "reuse_detected") == 1
        assert [t.id for t in token_store.list_active(user.id)] == ["other"]

    def test_expired_tokens_not_active_and_purged(self, user_store, token_store):
        user = add_user(user_store, "a@company.com")
        token_store.insert(_token("old", user.id, expires_in=-10))
        token_store.insert(_token("new", user.id))
        assert [t.id for t in token_store.list_active(user.id)] == ["new"]
        assert token_store.purge_expired(now_iso()) == 1
        assert token_store.get_by_id("old") is None


class TestOAuthStateStore:
    def test_consume_once(self, state_store):
        state = OAuthState(provider="google", return_url="https://app.company.com/", code_verifier="v", expires_at=_later(60))
        state_store.put("h1", state)
        assert state_store.consume("h1") == state
        assert state_store.consume("h1") is None

    def test_purge_expired(self, state_store):
        state_store.put("old", OAuthState("google", "https://app.company.com/", "v", _later(-60)))
        state_store.put("new", OAuthState("google", "https://app.company.com/", "v", _later(60)))
        assert state_store.purge_expired(now_iso()) == 1
        assert state_store.consume("new") is not None
