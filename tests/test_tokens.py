"""
tests/test_tokens.py -- Unit tests for auth/tokens.py primitives.

Covers:
  - bcrypt hashing and verification, including corrupt hashes
  - authenticate_user(): success and every failure path returns None
  - decode_access_token(): expiry, foreign key, algorithm confusion, garbage,
    wrong audience, non-access token type
  - HMAC secret hashing and client fingerprints
"""

from __future__ import annotations

import time

import pytest
from jose import jwt

from auth.errors import InvalidSignature, InvalidToken, MalformedToken, TokenExpired
from auth.tokens import (
    authenticate_user,
    decode_access_token,
    encode_access_token,
    fingerprint,
    generate_opaque_token,
    hash_password,
    hash_secret,
    verify_password,
)
from core.config import _generate_rsa_pair
from tests.helpers import add_user


def _claims(settings, **overrides):
    now = int(time.time())
    claims = {
        "sub": "42",
        "role": "user",
        "iat": now,
        "exp": now + 300,
        "jti": "abc123",
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "type": "access",
    }
    claims.update(overrides)
    return claims


def _decode(settings, token):
    return decode_access_token(
        token,
        settings.jwt_public_key,
        settings.jwt_algorithm,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )


class TestPasswords:
    def test_hash_verifies(self):
        hashed = hash_password("s3cret-password")
        assert hashed != "s3cret-password"
        assert verify_password("s3cret-password", hashed)
        assert not verify_password("wrong-password", hashed)

    def test_corrupt_hash_never_matches(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAuthenticateUser:
    def test_valid_credentials_return_user(self, user_store):
        created = add_user(user_store, "Bob@Company.com", password="bob-password-1")
        user = authenticate_user(user_store, "bob@company.com", "bob-password-1")
        assert user is not None
        assert user.id == created.id

    def test_unknown_email_returns_none(self, user_store):
        assert authenticate_user(user_store, "nobody@company.com", "whatever-pw") is None

    def test_wrong_password_returns_none(self, user_store):
        add_user(user_store, "carol@company.com", password="carol-password")
        assert authenticate_user(user_store, "carol@company.com", "not-carols") is None

    def test_oauth_only_user_cannot_password_login(self, user_store):
        add_user(user_store, "dave@company.com", password=None)
        assert authenticate_user(user_store, "dave@company.com", "") is None

    def test_disabled_user_returns_none(self, user_store):
        user = add_user(user_store, "erin@company.com", password="erin-password")
        user_store.update_user(user.id, is_active=False)
        assert authenticate_user(user_store, "erin@company.com", "erin-password") is None


class TestAccessTokens:
    def test_round_trip(self, settings):
        token = encode_access_token(_claims(settings), settings.jwt_private_key, settings.jwt_algorithm)
        payload = _decode(settings, token)
        assert payload["sub"] == "42"
        assert payload["role"] == "user"

    def test_expired_token(self, settings):
        past = int(time.time()) - 600
        token = encode_access_token(
            _claims(settings, iat=past, exp=past + 60), settings.jwt_private_key, settings.jwt_algorithm
        )
        with pytest.raises(TokenExpired):
            _decode(settings, token)

    def test_token_signed_by_foreign_key(self, settings):
        foreign_private, _ = _generate_rsa_pair()
        token = encode_access_token(_claims(settings), foreign_private, "RS256")
        with pytest.raises(InvalidSignature):
            _decode(settings, token)

    def test_hs256_with_public_key_is_rejected(self, settings):
        """Algorithm confusion: an HMAC token keyed with the public PEM must not verify."""
        forged = jwt.encode(_claims(settings), "attacker-chosen-secret", algorithm="HS256")
        with pytest.raises(InvalidSignature):
            _decode(settings, forged)

    def test_garbage_is_malformed(self, settings):
        with pytest.raises(MalformedToken):
            _decode(settings, "not-a-jwt")

    def test_wrong_audience(self, settings):
        token = encode_access_token(
            _claims(settings, aud="other.example"), settings.jwt_private_key, settings.jwt_algorithm
        )
        with pytest.raises(InvalidToken):
            _decode(settings, token)

    def test_non_access_type_is_malformed(self, settings):
        token = encode_access_token(
            _claims(settings, type="refresh"), settings.jwt_private_key, settings.jwt_algorithm
        )
        with pytest.raises(MalformedToken):
            _decode(settings, token)

    def test_missing_role_is_malformed(self, settings):
        claims = _claims(settings)
        del claims["role"]
        token = encode_access_token(claims, settings.jwt_private_key, settings.jwt_algorithm)
        with pytest.raises(MalformedToken):
            _decode(settings, token)


class TestOpaqueSecrets:
    def test_tokens_are_unique_and_long(self):
        a, b = generate_opaque_token(), generate_opaque_token()
        assert a != b
        assert len(a) >= 64

    def test_hash_secret_is_keyed_and_deterministic(self):
        assert hash_secret("k" * 32, "raw") == hash_secret("k" * 32, "raw")
        assert hash_secret("k" * 32, "raw") != hash_secret("j" * 32, "raw")
        assert len(hash_secret("k" * 32, "raw")) == 64

    def test_fingerprint_absent_user_agent(self):
        assert fingerprint("k" * 32, None) is None
        assert fingerprint("k" * 32, "") is None
        assert fingerprint("k" * 32, "Mozilla/5.0") == fingerprint("k" * 32, "Mozilla/5.0")
