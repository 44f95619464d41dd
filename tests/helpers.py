"""
tests/helpers.py -- Builders shared by conftest fixtures and test modules.

Kept out of conftest.py so test modules can import them directly.
"""

from __future__ import annotations

import uuid
from typing import Any

from authlib.common.urls import add_params_to_uri
from sqlalchemy.engine import Engine

from auth.errors import ProviderError, ProviderUnavailable
from auth.models import ProviderProfile, User
from auth.providers import OAuthProvider
from auth.store import UserStore, create_store_engine
from auth.tokens import hash_password


def make_engine(prefix: str = "test") -> Engine:
    """Return an engine on a fresh named shared-memory database."""
    name = f"{prefix}_{uuid.uuid4().hex}"
    return create_store_engine(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


def add_user(
    store: UserStore,
    email: str,
    password: str | None = "correct-horse-battery",
    role: str = "user",
    email_verified: bool = False,
) -> User:
    user_id = store.create_user(
        User(
            email=email,
            role=role,
            hashed_password=hash_password(password) if password else None,
            email_verified=email_verified,
        )
    )
    return store.get_by_id(user_id)


class FakeProvider(OAuthProvider):
    """OAuthProvider that answers from memory.

    fail_times: how many exchange_code calls raise ProviderUnavailable first.
    reject: when True, exchange_code raises ProviderError (never retried).
    """

    def __init__(self, name: str, profile: ProviderProfile | None = None, fail_times: int = 0, reject: bool = False):
        self.name = name
        self.label = name.title()
        self.profile = profile
        self.fail_times = fail_times
        self.reject = reject
        self.exchange_calls = 0
        self.profile_calls = 0
        self.last_code_verifier: str | None = None

    def authorization_url(self, state: str, redirect_uri: str, code_verifier: str) -> str:
        return add_params_to_uri(
            f"https://idp.example/{self.name}/authorize",
            [("state", state), ("redirect_uri", redirect_uri)],
        )

    async def exchange_code(self, code: str, redirect_uri: str, code_verifier: str) -> dict[str, Any]:
        self.exchange_calls += 1
        self.last_code_verifier = code_verifier
        if self.reject:
            raise ProviderError(detail=f"{self.name}: invalid_grant")
        if self.exchange_calls <= self.fail_times:
            raise ProviderUnavailable(detail=self.name)
        return {"access_token": f"fake-{code}", "token_type": "bearer"}

    async def fetch_profile(self, token: dict[str, Any]) -> ProviderProfile:
        self.profile_calls += 1
        return self.profile


def google_profile(subject: str = "g-1", email: str | None = "alice@company.com", verified: bool = True):
    return ProviderProfile(
        provider="google",
        provider_user_id=subject,
        email=email,
        email_verified=verified,
        first_name="Alice",
        last_name="Example",
    )
