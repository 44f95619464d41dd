"""
tests/test_oauth_flow.py -- OAuthLinkingFlow against in-memory fake providers.

The flow is async; tests drive it with asyncio.run() so no async pytest
plugin is needed.

Covers:
  - state is single-use, provider-bound, expiring, and checked before any
    provider call or account write
  - resolution policy: existing link, verified auto-link, AccountLinkRequired,
    create, EmailUnverified, explicit link, ProviderAlreadyLinked
  - one retry on transient provider failure, none on a provider error
  - unlink keeps at least one credential
"""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy import func, select

from auth.errors import (
    AccountLinkRequired,
    EmailUnverified,
    LastCredential,
    NotFoundError,
    ProviderAlreadyLinked,
    ProviderError,
    ProviderUnavailable,
    StateMismatch,
    UnknownProvider,
    UntrustedReturnURL,
)
from auth.oauth import OAuthLinkingFlow, OAuthOutcome
from auth.store import oauth_states
from auth.tokens import hash_secret
from tests.helpers import add_user, google_profile


def _state_from(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


def _callback(flow: OAuthLinkingFlow, provider: str, state: str | None, code: str | None = "auth-code"):
    return asyncio.run(flow.handle_callback(provider, code, state))


def _state_count(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(oauth_states)).scalar()


class TestInitiate:
    def test_returns_provider_url_and_stores_hashed_state(self, flow, engine, settings):
        url = flow.initiate_oauth("google", "/welcome")
        state = _state_from(url)
        assert url.startswith("https://idp.example/google/authorize")
        assert parse_qs(urlsplit(url).query)["redirect_uri"][0] == (
            "https://auth.company.com/auth/oauth/google/callback"
        )
        with engine.connect() as conn:
            row = conn.execute(select(oauth_states)).fetchone()
        assert row.state_hash == hash_secret(settings.secret_key, state)
        assert row.return_url == "https://app.company.com/welcome"

    def test_untrusted_return_url_stores_nothing(self, flow, engine):
        with pytest.raises(UntrustedReturnURL):
            flow.initiate_oauth("google", "https://evil.com/")
        assert _state_count(engine) == 0

    def test_unknown_provider(self, flow):
        with pytest.raises(UnknownProvider):
            flow.initiate_oauth("myspace", None)

    def test_enabled_providers(self, flow):
        assert flow.enabled_providers() == [
            {"name": "google", "label": "Google"},
            {"name": "github", "label": "Github"},
        ]


class TestStateValidation:
    def test_unknown_state_never_reaches_provider(self, flow, providers, user_store):
        with pytest.raises(StateMismatch):
            _callback(flow, "google", "forged-state")
        assert providers["google"].exchange_calls == 0
        assert user_store.count_users() == 0

    def test_missing_state(self, flow, providers):
        with pytest.raises(StateMismatch):
            _callback(flow, "google", None)
        assert providers["google"].exchange_calls == 0

    def test_state_is_single_use(self, flow):
        state = _state_from(flow.initiate_oauth("google", None))
        _callback(flow, "google", state)
        with pytest.raises(StateMismatch):
            _callback(flow, "google", state)

    def test_state_bound_to_provider(self, flow, providers):
        state = _state_from(flow.initiate_oauth("google", None))
        with pytest.raises(StateMismatch):
            _callback(flow, "github", state)
        assert providers["github"].exchange_calls == 0

    def test_expired_state(self, settings, providers, user_store, state_store, sso):
        expired = OAuthLinkingFlow(
            settings.model_copy(update={"oauth_state_ttl_seconds": -1}),
            providers,
            user_store,
            state_store,
            sso,
            retry_delay=0,
        )
        state = _state_from(expired.initiate_oauth("google", None))
        with pytest.raises(StateMismatch):
            _callback(expired, "google", state)
        assert providers["google"].exchange_calls == 0

    def test_pkce_verifier_travels_with_state(self, flow, providers):
        state = _state_from(flow.initiate_oauth("google", None))
        _callback(flow, "google", state)
        assert len(providers["google"].last_code_verifier) >= 43

    def test_missing_code_burns_state(self, flow, providers):
        state = _state_from(flow.initiate_oauth("google", None))
        with pytest.raises(ProviderError):
            _callback(flow, "google", state, code=None)
        with pytest.raises(StateMismatch):
            _callback(flow, "google", state)


class TestResolution:
    def test_creates_oauth_only_user(self, flow, user_store):
        state = _state_from(flow.initiate_oauth("google", "https://app.company.com/home"))
        result = _callback(flow, "google", state)
        assert result.outcome is OAuthOutcome.CREATED
        assert result.return_url == "https://app.company.com/home"
        assert result.user.email == "alice@company.com"
        assert result.user.hashed_password is None
        assert result.user.email_verified is True
        assert [a.provider for a in user_store.list_oauth_accounts(result.user.id)] == ["google"]

    def test_second_login_reuses_link(self, flow, user_store):
        first = _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        second = _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        assert second.outcome is OAuthOutcome.LINKED
        assert second.user.id == first.user.id
        assert user_store.count_users() == 1

    def test_unverified_email_cannot_create(self, flow, providers, user_store):
        providers["google"].profile = google_profile(verified=False)
        with pytest.raises(EmailUnverified):
            _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        assert user_store.count_users() == 0

    def test_auto_links_when_both_sides_verified(self, flow, user_store):
        local = add_user(user_store, "alice@company.com", email_verified=True)
        result = _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        assert result.outcome is OAuthOutcome.LINKED
        assert result.user.id == local.id
        assert user_store.count_users() == 1

    def test_unverified_local_account_requires_explicit_link(self, flow, user_store):
        """Someone pre-registered the address with a password; do not hand them the OAuth identity."""
        add_user(user_store, "alice@company.com", email_verified=False)
        with pytest.raises(AccountLinkRequired):
            _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        assert user_store.get_by_oauth("google", "g-1") is None

    def test_unverified_provider_email_never_links(self, flow, providers, user_store):
        add_user(user_store, "alice@company.com", email_verified=True)
        providers["google"].profile = google_profile(verified=False)
        with pytest.raises(AccountLinkRequired):
            _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))

    def test_explicit_link(self, flow, user_store):
        local = add_user(user_store, "someone.else@company.com")
        url = flow.initiate_oauth("google", None, link_user_id=local.id)
        result = _callback(flow, "google", _state_from(url))
        assert result.outcome is OAuthOutcome.LINKED
        assert result.user.id == local.id
        assert user_store.get_by_oauth("google", "g-1").id == local.id

    def test_explicit_link_to_identity_owned_by_other_user(self, flow, user_store):
        owner = _callback(flow, "google", _state_from(flow.initiate_oauth("google", None))).user
        other = add_user(user_store, "bob@company.com")
        url = flow.initiate_oauth("google", None, link_user_id=other.id)
        with pytest.raises(ProviderAlreadyLinked):
            _callback(flow, "google", _state_from(url))
        assert user_store.get_by_oauth("google", "g-1").id == owner.id


class TestRetry:
    def test_transient_failure_retried_once(self, flow, providers):
        providers["google"].fail_times = 1
        result = _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        assert result.outcome is OAuthOutcome.CREATED
        assert providers["google"].exchange_calls == 2

    def test_persistent_failure_surfaces(self, flow, providers, user_store):
        providers["google"].fail_times = 5
        with pytest.raises(ProviderUnavailable):
            _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        assert providers["google"].exchange_calls == 2
        assert user_store.count_users() == 0

    def test_provider_error_not_retried(self, flow, providers):
        providers["google"].reject = True
        with pytest.raises(ProviderError):
            _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        assert providers["google"].exchange_calls == 1


class TestUnlink:
    def test_last_credential_kept(self, flow):
        user = _callback(flow, "google", _state_from(flow.initiate_oauth("google", None))).user
        with pytest.raises(LastCredential):
            flow.unlink(user.id, "google")

    def test_password_user_can_unlink(self, flow, user_store):
        local = add_user(user_store, "alice@company.com", email_verified=True)
        _callback(flow, "google", _state_from(flow.initiate_oauth("google", None)))
        flow.unlink(local.id, "google")
        assert user_store.list_oauth_accounts(local.id) == []

    def test_not_linked(self, flow, user_store):
        local = add_user(user_store, "alice@company.com")
        with pytest.raises(NotFoundError):
            flow.unlink(local.id, "github")

    def test_unknown_provider(self, flow, user_store):
        local = add_user(user_store, "alice@company.com")
        with pytest.raises(UnknownProvider):
            flow.unlink(local.id, "myspace")
