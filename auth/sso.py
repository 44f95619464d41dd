"""
auth/sso.py -- Session/SSO coordinator.

Entry point for establishing identity across the company's subdomains. It
validates where the browser may be sent afterwards, asks the TokenAuthority
for tokens, and describes the cross-domain refresh cookie the HTTP layer must
set. It never makes authorization decisions.

Open-redirect defense [C2]: start_login() accepts a return URL only if it is
  - a server-local path ("/x", not "//x"), resolved against DEFAULT_RETURN_URL, or
  - an https URL (http only to localhost in DEBUG) without userinfo whose host
    equals or is a subdomain of an SSO_ALLOWED_DOMAINS entry.
Backslashes and control characters are rejected outright because browsers
normalize them in ways urllib does not.

Cookie: the refresh token rides in an HttpOnly cookie scoped to the shared
parent domain (COOKIE_DOMAIN, e.g. ".company.com") and to the /auth path, so
it is only ever sent to the authority's own refresh/logout endpoints.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING
from urllib.parse import urljoin, urlsplit

from auth.errors import InvalidCredentials, UntrustedReturnURL, ValidationError
from auth.models import CookieDirective, LoginResult, TokenPair, User
from auth.tokens import authenticate_user, hash_password

if TYPE_CHECKING:
    from core.config import Settings

    from auth.authority import TokenAuthority
    from auth.store import UserStore

logger = logging.getLogger("gatekeeper.auth.sso")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f\\]")
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

MIN_PASSWORD_LENGTH = 8
# bcrypt ignores everything past 72 bytes.
MAX_PASSWORD_BYTES = 72


class SSOCoordinator:
    """Orchestrates login, refresh and logout for every subdomain."""

    def __init__(self, settings: Settings, authority: TokenAuthority, user_store: UserStore) -> None:
        self._settings = settings
        self._authority = authority
        self._users = user_store
        self._allowed_domains = tuple(d.lower().lstrip(".") for d in settings.sso_allowed_domains if d.strip())

    # ------------------------------------------------------------------
    # Return-URL validation
    # ------------------------------------------------------------------

    def _host_allowed(self, host: str) -> bool:
        return any(host == domain or host.endswith("." + domain) for domain in self._allowed_domains)

    def start_login(self, return_url: str | None) -> str:
        """Validate a post-login destination. Returns the absolute URL to use.

        Raises UntrustedReturnURL for anything off the allow-list. An empty
        value yields DEFAULT_RETURN_URL.
        """
        if not return_url or not return_url.strip():
            return self._settings.default_return_url
        candidate = return_url.strip()
        if _CONTROL_RE.search(candidate):
            raise UntrustedReturnURL()

        if candidate.startswith("/") and not candidate.startswith("//"):
            return urljoin(self._settings.default_return_url, candidate)

        try:
            parsed = urlsplit(candidate)
            host = (parsed.hostname or "").lower()
            _ = parsed.port  # raises ValueError on a malformed port
        except ValueError as exc:
            raise UntrustedReturnURL() from exc

        if not host or parsed.username is not None or parsed.password is not None:
            raise UntrustedReturnURL()
        scheme = parsed.scheme.lower()
        if scheme == "http" and self._settings.debug and host in _LOCAL_HOSTS:
            return candidate
        if scheme != "https" or not self._host_allowed(host):
            logger.warning("Rejected untrusted return URL host %r", host)
            raise UntrustedReturnURL()
        return candidate

    # ------------------------------------------------------------------
    # Identity establishment
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, first_name: str = "", last_name: str = "") -> User:
        """Create a local password account. Raises EmailExists or ValidationError."""
        email = email.strip()
        if not _EMAIL_RE.match(email):
            raise ValidationError("Invalid email address.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")

        user_id = self._users.create_user(
            User(
                email=email,
                role=self._settings.default_role,
                hashed_password=hash_password(password),
                first_name=first_name.strip(),
                last_name=last_name.strip(),
            )
        )
        logger.info("Registered user %s", user_id)
        return self._users.get_by_id(user_id)

    def login_with_password(self, email: str, password: str, fingerprint: str | None = None) -> LoginResult:
        """Check a password login and complete it.

        Every failure raises the same InvalidCredentials so the response does
        not reveal whether the email exists [C1].
        """
        user = authenticate_user(self._users, email, password)
        if user is None:
            raise InvalidCredentials()
        return self.complete_login(user, fingerprint)

    def complete_login(self, user: User, fingerprint: str | None = None) -> LoginResult:
        """Issue a token pair for an established identity plus the refresh cookie."""
        tokens = self._authority.issue_token_pair(user.id, user.role, fingerprint=fingerprint)
        self._users.update_last_login(user.id)
        return LoginResult(user=user, tokens=tokens, cookies=[self.refresh_cookie(tokens.refresh_token)])

    def refresh(self, refresh_token: str, fingerprint: str | None = None) -> tuple[TokenPair, list[CookieDirective]]:
        """Rotate a refresh token and return the new pair with its cookie."""
        tokens = self._authority.rotate_refresh_token(refresh_token, fingerprint=fingerprint)
        return tokens, [self.refresh_cookie(tokens.refresh_token)]

    def logout(self, refresh_token: str | None) -> list[CookieDirective]:
        """Revoke the session's refresh token and instruct the cookie to be cleared.

        Idempotent: a missing, unknown or already-revoked token still yields
        the clearing directive.
        """
        if refresh_token:
            self._authority.revoke_refresh_token(refresh_token)
        return [self.clear_refresh_cookie()]

    # ------------------------------------------------------------------
    # Cookie directives
    # ------------------------------------------------------------------

    def _cookie_base(self) -> dict:
        samesite = self._settings.cookie_samesite
        return {
            "name": self._settings.refresh_cookie_name,
            "domain": self._settings.cookie_domain or None,
            "path": self._settings.refresh_cookie_path,
            "httponly": True,
            # Browsers drop SameSite=None cookies that are not Secure.
            "secure": self._settings.secure_cookies or samesite == "none",
            "samesite": samesite,
        }

    def refresh_cookie(self, refresh_token: str) -> CookieDirective:
        return CookieDirective(
            value=refresh_token,
            max_age=self._settings.refresh_token_ttl_seconds,
            **self._cookie_base(),
        )

    def clear_refresh_cookie(self) -> CookieDirective:
        return CookieDirective(value="", max_age=0, **self._cookie_base())
