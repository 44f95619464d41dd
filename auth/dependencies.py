"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and scopes.

Relying endpoints authenticate with an Authorization: Bearer <access token>
header. Verification is TokenAuthority.verify_access_token() (pure, no DB),
and authorization is authorize() against the role graph on app.state.

get_claims()          -- 401 unless a valid bearer token is present.
require_scope(scope)  -- dependency factory: 401 on a bad token, 403 when the
                         token's role does not grant scope.
get_current_user()    -- get_claims() plus a store lookup; 401 if the user is
                         gone or disabled.

Every 401 carries WWW-Authenticate: Bearer (RFC 6750) so API clients know to
re-authenticate rather than retry.

Layer rule: auth/dependencies.py may import from fastapi (for Depends,
HTTPException, Request) because it is part of the FastAPI dependency
injection system. No imports from api/.
"""

from __future__ import annotations

import logging
from typing import Callable

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from auth.authz import Decision, authorize
from auth.errors import AuthenticationError, InvalidToken
from auth.models import TokenClaims, User

logger = logging.getLogger("gatekeeper.auth")

# auto_error=False so a missing header reaches get_claims() and gets the
# same envelope as a bad token instead of FastAPI's default 403.
bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(exc: AuthenticationError) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": exc.code, "message": exc.message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> TokenClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.post("/auth/logout-all")
        async def route(claims: TokenClaims = Depends(get_claims)): ...
    """
    if credentials is None or not credentials.credentials:
        raise _unauthorized(AuthenticationError())
    try:
        return request.app.state.authority.verify_access_token(credentials.credentials)
    except InvalidToken as exc:
        logger.info("Rejected access token on %s: %s", request.url.path, exc.code)
        raise _unauthorized(exc) from exc


def require_scope(scope: str) -> Callable[..., TokenClaims]:
    """Build a dependency that grants access only when claims cover scope.

    The check is stateless. An access token from a refresh family revoked for
    reuse or logout stays valid until its exp, and the returned claims carry
    that family as `sid`. A relying service that must cut such sessions off
    early checks claims.sid against the session store itself.

    Use as a FastAPI dependency:
        @router.get("/users")
        async def route(claims: TokenClaims = Depends(require_scope("users:admin"))): ...
    """

    def dependency(request: Request, claims: TokenClaims = Depends(get_claims)) -> TokenClaims:
        decision = authorize(claims, scope, request.app.state.role_graph)
        if decision is not Decision.GRANTED:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient scope.", "detail": f"Requires {scope}"},
            )
        return claims

    return dependency


def get_current_user(request: Request, claims: TokenClaims = Depends(get_claims)) -> User:
    """Resolve the verified subject to its User row. Raises HTTP 401 if unusable."""
    user = request.app.state.user_store.get_by_id(claims.user_id)
    if user is None or not user.is_active or user.deleted_at is not None:
        raise _unauthorized(AuthenticationError())
    return user
