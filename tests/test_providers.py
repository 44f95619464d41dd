"""
tests/test_providers.py -- Provider adapters without the network.

Profile parsing is tested by replacing _get_json with canned payloads; the
authlib client is still constructed but never sends a request.
"""

from __future__ import annotations

import asyncio
import time
from urllib.parse import parse_qs, urlsplit

import pytest
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from jose import jwk, jwt

from auth.errors import ProviderError
from auth.providers import GitHubProvider, GoogleProvider, MicrosoftProvider, build_providers
from core.config import _generate_rsa_pair

TOKEN = {"access_token": "at", "token_type": "bearer"}
TENANT_ID = "9188040d-6c67-4c5b-b112-36a304b66dad"


def _canned(provider, payloads: dict):
    async def fake_get_json(client, url):
        return payloads[url]

    provider._get_json = fake_get_json
    return provider


class TestRegistry:
    def test_only_fully_configured_providers(self, settings):
        configured = settings.model_copy(
            update={
                "google_client_id": "gid",
                "google_client_secret": "gsecret",
                "github_client_id": "only-id",
                "github_client_secret": "",
            }
        )
        assert list(build_providers(configured)) == ["google"]

    def test_microsoft_tenant_in_endpoints(self):
        provider = MicrosoftProvider("id", "secret", 5.0, tenant="contoso")
        assert provider.token_endpoint == "https://login.microsoftonline.com/contoso/oauth2/v2.0/token"


def test_authorization_url_carries_pkce_challenge():
    provider = GoogleProvider("gid", "gsecret", 5.0)
    url = provider.authorization_url("st", "https://auth.company.com/cb", "verifier" * 8)
    query = parse_qs(urlsplit(url).query)
    assert url.startswith("https://accounts.google.com/")
    assert query["state"] == ["st"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["code_challenge"] == [create_s256_code_challenge("verifier" * 8)]
    assert "verifier" * 8 not in url


class TestProfiles:
    def test_google_verified_email(self):
        provider = _canned(
            GoogleProvider("id", "secret", 5.0),
            {GoogleProvider.userinfo_endpoint: {"sub": "123", "email": "a@company.com", "email_verified": True}},
        )
        profile = asyncio.run(provider.fetch_profile(TOKEN))
        assert profile.provider_user_id == "123"
        assert profile.email_verified is True

    def test_google_missing_sub(self):
        provider = _canned(GoogleProvider("id", "secret", 5.0), {GoogleProvider.userinfo_endpoint: {"email": "x"}})
        with pytest.raises(ProviderError):
            asyncio.run(provider.fetch_profile(TOKEN))

    def test_github_uses_primary_verified_email_only(self):
        provider = _canned(
            GitHubProvider("id", "secret", 5.0),
            {
                "https://api.github.com/user": {"id": 42, "name": "Ada Lovelace", "email": "public@example.com"},
                "https://api.github.com/user/emails": [
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "ada@company.com", "primary": True, "verified": True},
                ],
            },
        )
        profile = asyncio.run(provider.fetch_profile(TOKEN))
        assert profile.provider_user_id == "42"
        assert profile.email == "ada@company.com"
        assert profile.email_verified is True
        assert (profile.first_name, profile.last_name) == ("Ada", "Lovelace")

    def test_github_unverified_primary_yields_no_email(self):
        provider = _canned(
            GitHubProvider("id", "secret", 5.0),
            {
                "https://api.github.com/user": {"id": 42},
                "https://api.github.com/user/emails": [{"email": "ada@company.com", "primary": True, "verified": False}],
            },
        )
        profile = asyncio.run(provider.fetch_profile(TOKEN))
        assert profile.email is None
        assert profile.email_verified is False


def _microsoft_id_token(private_pem: str, **overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": f"https://login.microsoftonline.com/{TENANT_ID}/v2.0",
        "tid": TENANT_ID,
        "aud": "ms-client",
        "sub": "ms-1",
        "email": "a@company.com",
        "iat": now,
        "exp": now + 300,
        **overrides,
    }
    return jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": "ms-key"})


class TestMicrosoftIdToken:
    """Email verification comes from the signed ID token, never from Graph userinfo."""

    @pytest.fixture(scope="class")
    def keypair(self):
        return _generate_rsa_pair()

    def _provider(self, keypair, userinfo=None):
        public_jwk = {**jwk.construct(keypair[1], "RS256").to_dict(), "kid": "ms-key"}
        info = userinfo or {"sub": "ms-1", "email": "a@company.com", "given_name": "Ada"}
        provider = MicrosoftProvider("ms-client", "secret", 5.0)
        return _canned(provider, {provider.jwks_uri: {"keys": [public_jwk]}, MicrosoftProvider.userinfo_endpoint: info})

    @pytest.mark.parametrize("claim", ["xms_edov", "email_verified"])
    def test_verified_claim_in_id_token(self, keypair, claim):
        token = {**TOKEN, "id_token": _microsoft_id_token(keypair[0], **{claim: True})}
        profile = asyncio.run(self._provider(keypair).fetch_profile(token))
        assert profile.provider_user_id == "ms-1"
        assert profile.email_verified is True
        assert profile.first_name == "Ada"

    def test_userinfo_claims_are_ignored(self, keypair):
        info = {"sub": "ms-1", "email": "a@company.com", "email_verified": True, "xms_edov": True}
        token = {**TOKEN, "id_token": _microsoft_id_token(keypair[0])}
        profile = asyncio.run(self._provider(keypair, userinfo=info).fetch_profile(token))
        assert profile.email_verified is False

    def test_claim_covers_id_token_address_only(self, keypair):
        info = {"sub": "ms-1", "email": "other@company.com"}
        token = {**TOKEN, "id_token": _microsoft_id_token(keypair[0], xms_edov=True)}
        profile = asyncio.run(self._provider(keypair, userinfo=info).fetch_profile(token))
        assert profile.email_verified is False

    def test_missing_id_token(self, keypair):
        with pytest.raises(ProviderError):
            asyncio.run(self._provider(keypair).fetch_profile(TOKEN))

    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "someone-else"},
            {"iss": "https://login.microsoftonline.com/other-tenant/v2.0"},
            {"exp": 1},
            {"sub": "ms-2"},
        ],
    )
    def test_rejected_id_token(self, keypair, overrides):
        token = {**TOKEN, "id_token": _microsoft_id_token(keypair[0], xms_edov=True, **overrides)}
        with pytest.raises(ProviderError):
            asyncio.run(self._provider(keypair).fetch_profile(token))

    def test_foreign_signing_key(self, keypair):
        forged = _microsoft_id_token(_generate_rsa_pair()[0], xms_edov=True)
        with pytest.raises(ProviderError):
            asyncio.run(self._provider(keypair).fetch_profile({**TOKEN, "id_token": forged}))
