"""
api/routes/auth.py -- Authentication, session and OAuth endpoints.

Routes:
  POST   /auth/register                    -- create a password account
  POST   /auth/login                       -- password login; access token, refresh token in cookie only
  POST   /auth/refresh                     -- rotate refresh token (body or cookie)
  POST   /auth/logout                      -- revoke this session; clear cookie
  POST   /auth/logout-all                  -- revoke every session of the caller
  POST   /auth/validate                    -- verify an access token for relying services
  GET    /auth/providers                   -- enabled OAuth providers (public)
  GET    /auth/oauth/{provider}            -- start OAuth login; 302 to provider
  GET    /auth/oauth/{provider}/callback   -- finish OAuth; 302 to return URL
  POST   /auth/oauth/{provider}/link       -- start linking a provider to the caller
  DELETE /auth/oauth/{provider}            -- unlink a provider from the caller
  GET    /auth/me                          -- caller's profile and permissions
  GET    /auth/sessions                    -- caller's live sessions

Security:
  [H2] /login, /register and /refresh are rate-limited per IP.
  [C1] Login goes through SSOCoordinator -> authenticate_user() (timing
       equalization); never inline a lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries a token.
  [C2] Return URLs are validated by SSOCoordinator.start_login() before any
       redirect; callback failures only ever redirect to LOGIN_ERROR_URL.

AuthError subclasses raised by the core propagate to the handler in
api/main.py, which renders the standard error envelope.
"""

import logging
from typing import Optional

from authlib.common.urls import add_params_to_uri
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    AuthorizationURLResponse,
    ClaimsResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    ProviderInfo,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
    ValidateRequest,
)
from auth.dependencies import get_claims, get_current_user, require_scope
from auth.errors import AuthError, RefreshTokenNotFound
from auth.models import CookieDirective, TokenClaims, User
from auth.tokens import apply_cookie, fingerprint
from core.config import get_settings

logger = logging.getLogger("gatekeeper.api.auth")

settings = get_settings()

# Auth policy:
# - register, login, refresh, logout, validate, providers, oauth start/callback: public
# - logout-all:                 any valid access token (get_claims)
# - oauth link / unlink:        profile:write
# - me, sessions:               users:read
router = APIRouter()


def _fingerprint(request: Request) -> str | None:
    return fingerprint(settings.secret_key, request.headers.get("user-agent"))


def _token_response(body: dict, cookies: list[CookieDirective], status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=body)
    for directive in cookies:
        apply_cookie(resp, directive)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _no_content(cookies: list[CookieDirective]) -> Response:
    resp = Response(status_code=204)
    for directive in cookies:
        apply_cookie(resp, directive)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password accounts
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
@limiter.limit(settings.login_rate_limit)  # [H2]
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create a local account with the default role. 409 if the email is taken."""
    user = request.app.state.sso.register(body.email, body.password, body.first_name, body.last_name)
    return UserResponse.from_user(user)


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(settings.login_rate_limit)  # [H2]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Returns the same invalid_credentials error for an unknown email, a wrong
    password and a disabled account.
    """
    result = request.app.state.sso.login_with_password(body.email, body.password, _fingerprint(request))
    logger.info("Password login for user %s", result.user.id)
    return _token_response(LoginResponse.from_pair(result.tokens).model_dump(), result.cookies)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> str | None:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(settings.refresh_cookie_name)


@router.post("/auth/refresh", response_model=TokenResponse)
@limiter.limit(settings.login_rate_limit)  # [H2]
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token dies.

    Presenting a token that was already rotated revokes the whole chain
    (401 reuse_detected); the client must sign in again.
    """
    raw = _presented_refresh_token(request, body)
    if not raw:
        raise RefreshTokenNotFound()
    tokens, cookies = request.app.state.sso.refresh(raw, _fingerprint(request))
    return _token_response(TokenResponse.from_pair(tokens).model_dump(), cookies)


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> Response:
    """Revoke the presented refresh token and clear the cookie. Always 204."""
    cookies = request.app.state.sso.logout(_presented_refresh_token(request, body))
    return _no_content(cookies)


@router.post("/auth/logout-all", status_code=204)
def logout_all(request: Request, claims: TokenClaims = Depends(get_claims)) -> Response:
    """Revoke every refresh token the caller holds, on every device."""
    request.app.state.authority.revoke_all_for_user(claims.user_id, "logout_all")
    return _no_content([request.app.state.sso.clear_refresh_cookie()])


@router.post("/auth/validate", response_model=ClaimsResponse)
def validate(request: Request, body: ValidateRequest) -> ClaimsResponse:
    """Verify an access token on behalf of a relying service.

    Services that hold the public key (see /.well-known/jwks.json) can verify
    locally instead; this endpoint exists for those that cannot.
    """
    claims = request.app.state.authority.verify_access_token(body.token)
    return ClaimsResponse.from_claims(claims)


@router.get("/auth/me", response_model=MeResponse)
def me(
    request: Request,
    claims: TokenClaims = Depends(require_scope("users:read")),
    user: User = Depends(get_current_user),
) -> MeResponse:
    """Return the caller's profile, linked providers and effective permissions."""
    user_store = request.app.state.user_store
    graph = request.app.state.role_graph
    permissions = graph.effective_permissions(user.role) if user.role in graph else frozenset()
    return MeResponse(
        **UserResponse.from_user(user).model_dump(),
        providers=[a.provider for a in user_store.list_oauth_accounts(user.id)],
        permissions=sorted(str(p) for p in permissions),
        has_password=user.hashed_password is not None,
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def sessions(request: Request, claims: TokenClaims = Depends(require_scope("users:read"))) -> list[SessionResponse]:
    """List the caller's live session chains, flagging the one this token belongs to."""
    active = request.app.state.authority.user_sessions(claims.user_id)
    return [SessionResponse.from_token(t, claims.sid) for t in active]


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[ProviderInfo])
def list_providers(request: Request) -> list[ProviderInfo]:
    """Configured OAuth providers. The login page renders one button per entry."""
    return [ProviderInfo(**p) for p in request.app.state.oauth_flow.enabled_providers()]


@router.get("/auth/oauth/{provider}")
def oauth_start(request: Request, provider: str, return_url: Optional[str] = None) -> RedirectResponse:
    """Start an OAuth login. 400 for an untrusted return URL, 404 for an unknown provider."""
    url = request.app.state.oauth_flow.initiate_oauth(provider, return_url)
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/oauth/{provider}/callback")
async def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
) -> RedirectResponse:
    """Finish an OAuth flow and send the browser back with a refresh cookie.

    Every failure redirects to LOGIN_ERROR_URL with a stable error code, never
    to the stored return URL, so a broken flow cannot be turned into a
    redirect to an attacker-chosen page.
    """
    flow = request.app.state.oauth_flow
    if error:
        # Provider-side denial; still burn the state so it cannot be replayed.
        logger.info("OAuth %s returned error %r", provider, error)
        code = None
    try:
        result = await flow.handle_callback(provider, code, state)
        session = request.app.state.sso.complete_login(result.user, _fingerprint(request))
    except AuthError as exc:
        logger.warning("OAuth %s callback failed: %s", provider, exc.code)
        return RedirectResponse(
            add_params_to_uri(settings.login_error_url, [("error", exc.code)]),
            status_code=302,
        )

    resp = RedirectResponse(result.return_url, status_code=302)
    for directive in session.cookies:
        apply_cookie(resp, directive)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/oauth/{provider}/link", response_model=AuthorizationURLResponse)
def oauth_link(
    request: Request,
    provider: str,
    return_url: Optional[str] = None,
    claims: TokenClaims = Depends(require_scope("profile:write")),
) -> AuthorizationURLResponse:
    """Start linking another provider to the signed-in account.

    Returns the URL instead of redirecting because the call carries a bearer
    token, which a top-level browser navigation cannot.
    """
    url = request.app.state.oauth_flow.initiate_oauth(provider, return_url, link_user_id=claims.user_id)
    return AuthorizationURLResponse(authorization_url=url)


@router.delete("/auth/oauth/{provider}", status_code=204)
def oauth_unlink(
    request: Request,
    provider: str,
    claims: TokenClaims = Depends(require_scope("profile:write")),
) -> Response:
    """Remove a provider link. 409 last_credential if it is the only way to sign in."""
    request.app.state.oauth_flow.unlink(claims.user_id, provider)
    return Response(status_code=204)
