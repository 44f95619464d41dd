"""
auth/errors.py -- Exception taxonomy for the identity core.

Every failure the core can report is an AuthError subclass carrying a stable
machine-readable code, a user-facing message, and the HTTP status the API
layer maps it to. api/main.py turns any AuthError into the standard
{"error": {"code", "message"}} envelope, so route handlers simply let these
propagate.

Messages on AuthenticationError subclasses are deliberately uniform. They
must never reveal whether an email address exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all identity-core failures."""

    code = "auth_error"
    message = "Request could not be completed."
    status_code = 400

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# 4xx -- caller-correctable input
# ---------------------------------------------------------------------------


class ValidationError(AuthError):
    code = "validation_error"
    message = "Request validation failed."
    status_code = 422


class UntrustedReturnURL(ValidationError):
    code = "untrusted_return_url"
    message = "The return URL is not on a registered domain."
    status_code = 400


class NotFoundError(AuthError):
    code = "not_found"
    message = "Resource not found."
    status_code = 404


class UnknownProvider(NotFoundError):
    code = "unknown_provider"
    message = "OAuth provider is not enabled."


class UserNotFound(NotFoundError):
    code = "user_not_found"
    message = "User not found."


# ---------------------------------------------------------------------------
# 401 -- identity could not be established
# ---------------------------------------------------------------------------


class AuthenticationError(AuthError):
    code = "unauthorized"
    message = "Authentication required."
    status_code = 401


class InvalidCredentials(AuthenticationError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class InvalidToken(AuthenticationError):
    code = "invalid_token"
    message = "Token is invalid."


class TokenExpired(InvalidToken):
    code = "token_expired"
    message = "Token has expired."


class InvalidSignature(InvalidToken):
    code = "invalid_signature"


class MalformedToken(InvalidToken):
    code = "malformed_token"


class RefreshTokenNotFound(AuthenticationError):
    code = "refresh_token_not_found"
    message = "Refresh token is invalid."


class RefreshTokenExpired(AuthenticationError):
    code = "refresh_token_expired"
    message = "Refresh token has expired."


class EmailUnverified(AuthenticationError):
    code = "email_unverified"
    message = "The identity provider did not confirm the email address."


class AccountDisabled(AuthenticationError):
    code = "account_disabled"
    message = "Authentication required."


# ---------------------------------------------------------------------------
# Security anomalies -- 401 to the caller, logged on gatekeeper.security
# ---------------------------------------------------------------------------


class SecurityAnomaly(AuthenticationError):
    code = "security_anomaly"


class ReuseDetected(SecurityAnomaly):
    code = "reuse_detected"
    message = "Refresh token was already used. All sessions in this chain have been revoked."


class StateMismatch(SecurityAnomaly):
    code = "state_mismatch"
    message = "OAuth state is invalid or expired."


# ---------------------------------------------------------------------------
# 403 -- identity known, scope insufficient
# ---------------------------------------------------------------------------


class AuthorizationError(AuthError):
    code = "forbidden"
    message = "Insufficient scope."
    status_code = 403


# ---------------------------------------------------------------------------
# 409 -- state conflicts
# ---------------------------------------------------------------------------


class ConflictError(AuthError):
    code = "conflict"
    message = "Request conflicts with existing state."
    status_code = 409


class EmailExists(ConflictError):
    code = "email_exists"
    message = "An account with that email already exists."


class ProviderAlreadyLinked(ConflictError):
    code = "provider_already_linked"
    message = "This provider identity is linked to another account."


class AccountLinkRequired(ConflictError):
    code = "account_link_required"
    message = "An account with this email exists. Sign in and link the provider from your account settings."


class LastCredential(ConflictError):
    code = "last_credential"
    message = "Cannot remove the only sign-in method on this account."


# ---------------------------------------------------------------------------
# 502 -- upstream identity provider failed
# ---------------------------------------------------------------------------


class UpstreamError(AuthError):
    code = "upstream_error"
    message = "Identity provider is unavailable."
    status_code = 502


class ProviderUnavailable(UpstreamError):
    """Transient failure (timeout, connection error, 5xx). Retried once."""

    code = "provider_unavailable"


class ProviderError(UpstreamError):
    """Provider answered but the answer is unusable. Never retried."""

    code = "provider_error"
    message = "Identity provider returned an invalid response."
