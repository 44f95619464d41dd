"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Gatekeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates a SECRET_KEY and an RSA signing
      pair with a warning; production mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It keys the
       HMAC used for refresh-token and OAuth-state lookups.

  [M7] Access tokens are signed asymmetrically. Downstream services only
       ever need JWT_PUBLIC_KEY; the private key never leaves this service.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gatekeeper.config")

_SUPPORTED_ALGORITHMS = {"RS256", "ES256"}


def _generate_rsa_pair() -> tuple[str, str]:
    """Return a fresh (private_pem, public_pem) RSA-2048 pair for dev mode."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )
    return private_pem, public_pem


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = f"sqlite:///{Path(__file__).resolve().parent.parent / 'gatekeeper.db'}"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver", "*.localhost"]

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    jwt_algorithm: str = "RS256"
    jwt_private_key: str = ""
    jwt_public_key: str = ""
    jwt_private_key_path: str = ""
    jwt_public_key_path: str = ""
    jwt_issuer: str = "https://auth.company.com"
    jwt_audience: str = "company.com"

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 30 * 24 * 3600

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    # Empty means "use the built-in user/moderator/admin graph".
    role_config_path: str = ""
    default_role: str = "user"

    # ------------------------------------------------------------------
    # SSO / cookies
    # ------------------------------------------------------------------

    sso_allowed_domains: list[str] = ["company.com"]
    default_return_url: str = "https://app.company.com/"
    login_error_url: str = "https://app.company.com/login"
    cookie_domain: str = ".company.com"
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/auth"
    secure_cookies: bool = True
    cookie_samesite: str = "lax"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    oauth_redirect_base_url: str = "https://auth.company.com"
    oauth_state_ttl_seconds: int = 600
    oauth_http_timeout_seconds: float = 10.0

    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    # "common" accepts both work/school and personal Microsoft accounts.
    microsoft_tenant: str = "common"

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("cookie_samesite")
    @classmethod
    def validate_samesite(cls, value: str) -> str:
        value = value.lower()
        if value not in ("lax", "strict", "none"):
            raise ValueError("COOKIE_SAMESITE must be one of: lax, strict, none")
        return value

    @field_validator("jwt_algorithm")
    @classmethod
    def validate_algorithm(cls, value: str) -> str:
        # Symmetric algorithms would force every relying service to hold the
        # signing secret.
        if value not in _SUPPORTED_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {sorted(_SUPPORTED_ALGORITHMS)}")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M6].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Refresh tokens will not survive restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def load_signing_keys(self) -> "Settings":
        """Resolve the PEM signing pair from inline values or files [M7].

        Inline JWT_PRIVATE_KEY / JWT_PUBLIC_KEY take precedence over the *_PATH
        variants. With neither set, dev mode generates an ephemeral RSA pair;
        production mode refuses to start.
        """
        if not self.jwt_private_key and self.jwt_private_key_path:
            self.jwt_private_key = Path(self.jwt_private_key_path).read_text()
        if not self.jwt_public_key and self.jwt_public_key_path:
            self.jwt_public_key = Path(self.jwt_public_key_path).read_text()

        if not self.jwt_private_key or not self.jwt_public_key:
            if self.debug and self.jwt_algorithm == "RS256":
                self.jwt_private_key, self.jwt_public_key = _generate_rsa_pair()
                logger.warning(
                    "WARNING: Using an auto-generated RSA signing key. " "Access tokens will not survive restarts."
                )
            else:
                raise ValueError(
                    "JWT_PRIVATE_KEY and JWT_PUBLIC_KEY (or their *_PATH variants) are required. "
                    "To run in development mode, set DEBUG=true."
                )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
