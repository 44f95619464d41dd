"""
auth/providers.py -- OAuth provider adapters behind one capability interface.

OAuthLinkingFlow depends only on OAuthProvider:

    authorization_url(state, redirect_uri, code_verifier) -> str
    await exchange_code(code, redirect_uri, code_verifier) -> token dict
    await fetch_profile(token) -> ProviderProfile

Each adapter uses authlib's httpx AsyncOAuth2Client for the code exchange and
profile calls, with a bounded timeout. Every request uses PKCE (S256).

Email verification: each adapter reports whether the provider vouches
for the email address. The flow, not the adapter, decides what an
unverified email may be used for.
  google    -- OIDC userinfo "email_verified".
  github    -- only the /user/emails entry with primary=true AND verified=true.
  microsoft -- the validated ID token; "email_verified" or "xms_edov" must
               be true. Graph userinfo never carries either claim, and Entra
               ID lets tenant admins set arbitrary unverified mail
               attributes, so absence means unverified.

Errors: transport failures, timeouts and 5xx responses raise
ProviderUnavailable (retryable); error responses and unusable payloads raise
ProviderError.

Layer rule: no imports from api/. Settings are passed to build_providers().
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx
from authlib.common.urls import add_params_to_uri
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from jose import JWTError, jwt

from auth.errors import ProviderError, ProviderUnavailable
from auth.models import Provider, ProviderProfile

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("gatekeeper.auth.oauth")


class OAuthProvider(ABC):
    """Capability interface implemented once per identity provider."""

    name: str
    label: str

    @abstractmethod
    def authorization_url(self, state: str, redirect_uri: str, code_verifier: str) -> str:
        """Build the provider URL the browser is redirected to."""

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str, code_verifier: str) -> dict[str, Any]:
        """Trade an authorization code for a provider token response."""

    @abstractmethod
    async def fetch_profile(self, token: dict[str, Any]) -> ProviderProfile:
        """Read the user's identity with a provider token."""


class _AuthlibProvider(OAuthProvider):
    """Shared authorization-code + PKCE plumbing on authlib's httpx client."""

    authorize_endpoint: str
    token_endpoint: str
    scope: str
    extra_authorize_params: dict[str, str] = {}

    def __init__(self, client_id: str, client_secret: str, timeout: float) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

    def _client(self, redirect_uri: str | None = None, token: dict | None = None) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            redirect_uri=redirect_uri,
            token=token,
            code_challenge_method="S256",
            timeout=self.timeout,
        )

    def authorization_url(self, state: str, redirect_uri: str, code_verifier: str) -> str:
        params = [
            ("response_type", "code"),
            ("client_id", self.client_id),
            ("redirect_uri", redirect_uri),
            ("scope", self.scope),
            ("state", state),
            ("code_challenge", create_s256_code_challenge(code_verifier)),
            ("code_challenge_method", "S256"),
        ]
        params.extend(self.extra_authorize_params.items())
        return add_params_to_uri(self.authorize_endpoint, params)

    async def exchange_code(self, code: str, redirect_uri: str, code_verifier: str) -> dict[str, Any]:
        try:
            async with self._client(redirect_uri=redirect_uri) as client:
                token = await client.fetch_token(self.token_endpoint, code=code, code_verifier=code_verifier)
        except OAuthError as exc:
            logger.warning("%s token exchange rejected: %s", self.name, exc.error)
            raise ProviderError(detail=f"{self.name}: {exc.error}") from exc
        except httpx.HTTPStatusError as exc:
            raise _status_error(self.name, exc) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s token exchange failed: %s", self.name, exc)
            raise ProviderUnavailable(detail=self.name) from exc
        except ValueError as exc:
            raise ProviderError(detail=f"{self.name}: non-JSON token response") from exc
        if not token or "access_token" not in token:
            raise ProviderError(detail=f"{self.name}: token response missing access_token")
        return dict(token)

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> Any:
        try:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise _status_error(self.name, exc) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s profile request failed: %s", self.name, exc)
            raise ProviderUnavailable(detail=self.name) from exc
        except ValueError as exc:
            raise ProviderError(detail=f"{self.name}: non-JSON profile response") from exc


def _status_error(provider: str, exc: httpx.HTTPStatusError) -> ProviderError | ProviderUnavailable:
    status = exc.response.status_code
    logger.warning("%s returned HTTP %d", provider, status)
    if status >= 500:
        return ProviderUnavailable(detail=f"{provider}: HTTP {status}")
    return ProviderError(detail=f"{provider}: HTTP {status}")


def _split_name(full_name: str | None) -> tuple[str, str]:
    if not full_name:
        return "", ""
    first, _, last = full_name.strip().partition(" ")
    return first, last.strip()


class GoogleProvider(_AuthlibProvider):
    name = Provider.google.value
    label = "Google"
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_endpoint = "https://openidconnect.googleapis.com/v1/userinfo"
    scope = "openid email profile"

    async def fetch_profile(self, token: dict[str, Any]) -> ProviderProfile:
        async with self._client(token=token) as client:
            info = await self._get_json(client, self.userinfo_endpoint)
        if not isinstance(info, dict) or not info.get("sub"):
            raise ProviderError(detail="google: userinfo missing sub")
        return ProviderProfile(
            provider=self.name,
            provider_user_id=str(info["sub"]),
            email=info.get("email"),
            email_verified=info.get("email_verified") is True,
            first_name=info.get("given_name", "") or "",
            last_name=info.get("family_name", "") or "",
        )


class GitHubProvider(_AuthlibProvider):
    name = Provider.github.value
    label = "GitHub"
    authorize_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
    api_base = "https://api.github.com"
    scope = "read:user user:email"

    async def fetch_profile(self, token: dict[str, Any]) -> ProviderProfile:
        """GitHub needs two calls: /user for the stable numeric id, /user/emails
        for the primary verified address. The public profile email is ignored
        because GitHub does not vouch for it."""
        async with self._client(token=token) as client:
            profile = await self._get_json(client, f"{self.api_base}/user")
            emails = await self._get_json(client, f"{self.api_base}/user/emails")
        if not isinstance(profile, dict) or "id" not in profile:
            raise ProviderError(detail="github: /user missing id")

        email: str | None = None
        for entry in emails if isinstance(emails, list) else []:
            if entry.get("primary") and entry.get("verified"):
                email = entry.get("email")
                break

        first, last = _split_name(profile.get("name"))
        return ProviderProfile(
            provider=self.name,
            provider_user_id=str(profile["id"]),
            email=email,
            email_verified=email is not None,
            first_name=first,
            last_name=last,
        )


class MicrosoftProvider(_AuthlibProvider):
    """Microsoft identity platform (Entra ID and personal accounts).

    Graph's /oidc/userinfo carries no verification claim, so email_verified is
    read from the ID token in the token response. The app registration must
    request the optional "xms_edov" ID-token claim; without it every address
    counts as unverified. The ID token is checked against the tenant JWKS
    (signature, audience, expiry, per-tenant issuer) before any claim is used.
    """

    name = Provider.microsoft.value
    label = "Microsoft"
    userinfo_endpoint = "https://graph.microsoft.com/oidc/userinfo"
    scope = "openid email profile"
    jwks_ttl_seconds = 3600

    def __init__(self, client_id: str, client_secret: str, timeout: float, tenant: str = "common") -> None:
        super().__init__(client_id, client_secret, timeout)
        base = f"https://login.microsoftonline.com/{tenant}"
        self.authorize_endpoint = f"{base}/oauth2/v2.0/authorize"
        self.token_endpoint = f"{base}/oauth2/v2.0/token"
        self.jwks_uri = f"{base}/discovery/v2.0/keys"
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0

    async def fetch_profile(self, token: dict[str, Any]) -> ProviderProfile:
        claims = await self._id_token_claims(token)
        async with self._client(token=token) as client:
            info = await self._get_json(client, self.userinfo_endpoint)
        if not isinstance(info, dict) or not info.get("sub"):
            raise ProviderError(detail="microsoft: userinfo missing sub")
        if info["sub"] != claims.get("sub"):
            raise ProviderError(detail="microsoft: userinfo and id_token subjects differ")

        email = info.get("email") or claims.get("email")
        vouched = claims.get("email_verified") is True or claims.get("xms_edov") is True
        # The claim vouches for the ID token's address only.
        verified = bool(email) and vouched and str(claims.get("email") or "").lower() == email.lower()
        return ProviderProfile(
            provider=self.name,
            provider_user_id=str(info["sub"]),
            email=email,
            email_verified=verified,
            first_name=info.get("given_name", "") or "",
            last_name=info.get("family_name", "") or "",
        )

    async def _id_token_claims(self, token: dict[str, Any]) -> dict[str, Any]:
        id_token = token.get("id_token")
        if not id_token:
            raise ProviderError(detail="microsoft: token response missing id_token")
        jwks = await self._signing_keys()
        try:
            claims = jwt.decode(
                id_token,
                jwks,
                algorithms=["RS256"],
                audience=self.client_id,
                access_token=token.get("access_token"),
            )
        except JWTError as exc:
            logger.warning("microsoft id_token rejected: %s", exc)
            raise ProviderError(detail="microsoft: invalid id_token") from exc
        # Multi-tenant endpoints sign for every tenant; the issuer must name the token's own tenant.
        if not claims.get("tid") or claims.get("iss") != f"https://login.microsoftonline.com/{claims['tid']}/v2.0":
            raise ProviderError(detail="microsoft: id_token issuer mismatch")
        return claims

    async def _signing_keys(self) -> dict[str, Any]:
        if self._jwks is not None and time.monotonic() - self._jwks_fetched_at < self.jwks_ttl_seconds:
            return self._jwks
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            jwks = await self._get_json(client, self.jwks_uri)
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise ProviderError(detail="microsoft: malformed JWKS")
        self._jwks, self._jwks_fetched_at = jwks, time.monotonic()
        return jwks


def build_providers(settings: Settings) -> dict[str, OAuthProvider]:
    """Instantiate every provider whose client id AND secret are configured."""
    timeout = settings.oauth_http_timeout_seconds
    providers: dict[str, OAuthProvider] = {}

    if settings.google_client_id and settings.google_client_secret:
        providers["google"] = GoogleProvider(settings.google_client_id, settings.google_client_secret, timeout)
        logger.info("Google OAuth provider registered")

    if settings.github_client_id and settings.github_client_secret:
        providers["github"] = GitHubProvider(settings.github_client_id, settings.github_client_secret, timeout)
        logger.info("GitHub OAuth provider registered")

    if settings.microsoft_client_id and settings.microsoft_client_secret:
        providers["microsoft"] = MicrosoftProvider(
            settings.microsoft_client_id,
            settings.microsoft_client_secret,
            timeout,
            tenant=settings.microsoft_tenant,
        )
        logger.info("Microsoft OAuth provider registered (tenant: %s)", settings.microsoft_tenant)

    return providers
