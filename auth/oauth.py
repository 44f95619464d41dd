"""
auth/oauth.py -- OAuth linking flow: provider handshake to local identity.

Per provider the flow moves Initiated -> ProviderRedirected ->
CallbackReceived -> {Linked, Created, Failed}.

initiate_oauth() binds a fresh random state to the return URL, a PKCE
verifier and (for explicit linking) the signed-in user, server-side in
oauth_states. Only the HMAC of the state is stored. Any instance can finish
a flow another instance started.

handle_callback() consumes the state before doing anything else. A state
that was never issued, was already used, belongs to another provider, or has
expired fails closed with StateMismatch and never reaches account
resolution (CSRF / login-fixation defense).

No user or link row is written until the provider exchange has completed
and the profile has been validated.

Resolution policy, first match wins:
  1. Explicit link (state carries link_user_id): attach identity to that user.
  2. Existing OAuthAccount for (provider, provider_user_id): that user.
  3. User with the same email: auto-link only if the provider verified the
     email AND the local account's email is verified; otherwise
     AccountLinkRequired. A password account registered with someone
     else's address must not be silently taken over, nor may an attacker
     pre-register a victim's address and inherit the victim's OAuth login.
  4. Nobody: create User + OAuthAccount atomically, provider email must be
     verified (EmailUnverified otherwise).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from auth.errors import (
    AccountDisabled,
    AccountLinkRequired,
    EmailUnverified,
    NotFoundError,
    ProviderAlreadyLinked,
    ProviderError,
    ProviderUnavailable,
    StateMismatch,
    UnknownProvider,
)
from auth.models import OAuthAccount, OAuthState, Provider, ProviderProfile, User
from auth.store import now_iso
from auth.tokens import generate_opaque_token, hash_secret

if TYPE_CHECKING:
    from core.config import Settings

    from auth.providers import OAuthProvider
    from auth.sso import SSOCoordinator
    from auth.store import UserStore
    from auth.token_store import OAuthStateStore

logger = logging.getLogger("gatekeeper.auth.oauth")
security_logger = logging.getLogger("gatekeeper.security")

T = TypeVar("T")


class OAuthOutcome(str, Enum):
    LINKED = "linked"
    CREATED = "created"
    FAILED = "failed"


@dataclass(frozen=True)
class OAuthResult:
    user: User
    outcome: OAuthOutcome
    return_url: str


class OAuthLinkingFlow:
    """Drives provider handshakes and resolves provider identities to users."""

    def __init__(
        self,
        settings: Settings,
        providers: dict[str, OAuthProvider],
        user_store: UserStore,
        state_store: OAuthStateStore,
        sso: SSOCoordinator,
        retry_delay: float = 0.5,
    ) -> None:
        self._settings = settings
        self._providers = providers
        self._users = user_store
        self._states = state_store
        self._sso = sso
        self._retry_delay = retry_delay

    # ------------------------------------------------------------------
    # Provider metadata
    # ------------------------------------------------------------------

    def enabled_providers(self) -> list[dict]:
        """Return [{"name", "label"}] for every configured provider."""
        return [{"name": p.name, "label": p.label} for p in self._providers.values()]

    def _provider(self, name: str) -> OAuthProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise UnknownProvider()
        return provider

    def redirect_uri(self, provider: str) -> str:
        return f"{self._settings.oauth_redirect_base_url.rstrip('/')}/auth/oauth/{provider}/callback"

    # ------------------------------------------------------------------
    # Initiated -> ProviderRedirected
    # ------------------------------------------------------------------

    def initiate_oauth(self, provider: str, return_url: str | None, link_user_id: int | None = None) -> str:
        """Bind a new state to return_url and return the provider authorization URL.

        Raises UnknownProvider or UntrustedReturnURL. The return URL is
        validated here, before it is ever stored or embedded anywhere.
        """
        adapter = self._provider(provider)
        safe_return = self._sso.start_login(return_url)

        state = generate_opaque_token()
        code_verifier = secrets.token_urlsafe(64)
        expires = datetime.now(timezone.utc) + timedelta(seconds=self._settings.oauth_state_ttl_seconds)
        self._states.put(
            hash_secret(self._settings.secret_key, state),
            OAuthState(
                provider=provider,
                return_url=safe_return,
                code_verifier=code_verifier,
                link_user_id=link_user_id,
                expires_at=expires.isoformat(timespec="microseconds"),
            ),
        )
        logger.info("OAuth flow initiated for %s (link=%s)", provider, link_user_id is not None)
        return adapter.authorization_url(state, self.redirect_uri(provider), code_verifier)

    # ------------------------------------------------------------------
    # CallbackReceived -> {Linked, Created, Failed}
    # ------------------------------------------------------------------

    async def handle_callback(self, provider: str, code: str | None, state: str | None) -> OAuthResult:
        """Validate state, exchange the code, and resolve the local user.

        Raises StateMismatch, ProviderError/ProviderUnavailable, EmailUnverified,
        AccountLinkRequired, ProviderAlreadyLinked, AccountDisabled.
        """
        adapter = self._provider(provider)
        record = self._consume_state(provider, state)

        if not code:
            raise ProviderError(detail=f"{provider}: callback without code")

        redirect_uri = self.redirect_uri(provider)
        token = await self._with_retry(adapter.exchange_code, code, redirect_uri, record.code_verifier)
        profile = await self._with_retry(adapter.fetch_profile, token)
        if profile.provider != provider or not profile.provider_user_id:
            raise ProviderError(detail=f"{provider}: profile without subject")

        user, outcome = self._resolve(profile, record.link_user_id)
        logger.info("OAuth %s callback resolved user %s (%s)", provider, user.id, outcome.value)
        return OAuthResult(user=user, outcome=outcome, return_url=record.return_url)

    def _consume_state(self, provider: str, state: str | None) -> OAuthState:
        if not state:
            security_logger.warning("OAuth %s callback without state", provider)
            raise StateMismatch()
        record = self._states.consume(hash_secret(self._settings.secret_key, state))
        if record is None:
            security_logger.warning("OAuth %s callback with unknown or replayed state", provider)
            raise StateMismatch()
        if record.provider != provider:
            security_logger.warning("OAuth state issued for %s presented to %s callback", record.provider, provider)
            raise StateMismatch()
        if record.expires_at <= now_iso():
            security_logger.warning("OAuth %s callback with expired state", provider)
            raise StateMismatch()
        return record

    async def _with_retry(self, op: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run op, retrying exactly once after a transient provider failure."""
        try:
            return await op(*args)
        except ProviderUnavailable:
            logger.warning("Provider call %s failed transiently; retrying once", getattr(op, "__name__", op))
            await asyncio.sleep(self._retry_delay)
        return await op(*args)

    # ------------------------------------------------------------------
    # Account resolution
    # ------------------------------------------------------------------

    def _resolve(self, profile: ProviderProfile, link_user_id: int | None) -> tuple[User, OAuthOutcome]:
        existing = self._users.get_by_oauth(profile.provider, profile.provider_user_id)

        if link_user_id is not None:
            return self._explicit_link(profile, link_user_id, existing), OAuthOutcome.LINKED

        if existing is not None:
            _ensure_active(existing)
            return existing, OAuthOutcome.LINKED

        if profile.email:
            match = self._users.get_by_email(profile.email)
            if match is not None:
                if not (profile.email_verified and match.email_verified):
                    security_logger.info(
                        "OAuth %s identity matches existing user %s by email; explicit link required",
                        profile.provider,
                        match.id,
                    )
                    raise AccountLinkRequired()
                _ensure_active(match)
                self._users.link_oauth(_account_for(match.id, profile))
                logger.info("Auto-linked %s identity to user %s by verified email", profile.provider, match.id)
                return match, OAuthOutcome.LINKED

        if not profile.email or not profile.email_verified:
            raise EmailUnverified()

        user_id = self._users.create_oauth_user(
            User(
                email=profile.email,
                role=self._settings.default_role,
                email_verified=True,
                first_name=profile.first_name,
                last_name=profile.last_name,
            ),
            _account_for(0, profile),
        )
        return self._users.get_by_id(user_id), OAuthOutcome.CREATED

    def _explicit_link(self, profile: ProviderProfile, user_id: int, existing: User | None) -> User:
        if existing is not None:
            if existing.id == user_id:
                return existing
            security_logger.warning(
                "User %s tried to link a %s identity owned by user %s", user_id, profile.provider, existing.id
            )
            raise ProviderAlreadyLinked()
        target = self._users.get_by_id(user_id)
        if target is None:
            raise AccountDisabled()
        _ensure_active(target)
        self._users.link_oauth(_account_for(target.id, profile))
        logger.info("Linked %s identity to user %s on request", profile.provider, target.id)
        return target

    # ------------------------------------------------------------------
    # Unlink
    # ------------------------------------------------------------------

    def unlink(self, user_id: int, provider: str) -> None:
        """Remove a provider link. Raises LastCredential or NotFoundError."""
        if provider not in Provider.__members__:
            raise UnknownProvider()
        if not self._users.unlink_oauth(user_id, provider):
            raise NotFoundError("No linked account for this provider.")
        logger.info("Unlinked %s from user %s", provider, user_id)


def _ensure_active(user: User) -> None:
    if not user.is_active or user.deleted_at is not None:
        raise AccountDisabled()


def _account_for(user_id: int, profile: ProviderProfile) -> OAuthAccount:
    return OAuthAccount(
        user_id=user_id,
        provider=profile.provider,
        provider_user_id=profile.provider_user_id,
        email=profile.email,
    )
