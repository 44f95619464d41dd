"""
api/main.py -- FastAPI application entry point for Gatekeeper.

Exposes the identity core over HTTP: password and OAuth login, refresh-token
rotation, logout, token validation for relying services, and admin user
management.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- credentialed CORS for https origins on SSO domains
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the engine, stores and services once and hangs them off
app.state; shutdown disposes the engine.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.users import router as users_router
from auth.authority import TokenAuthority
from auth.errors import AuthError, SecurityAnomaly
from auth.oauth import OAuthLinkingFlow
from auth.providers import build_providers
from auth.roles import load_role_graph
from auth.sso import SSOCoordinator
from auth.store import UserStore, create_store_engine
from auth.token_store import OAuthStateStore, RefreshTokenStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("gatekeeper.api")
security_logger = logging.getLogger("gatekeeper.security")

settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, user_store: UserStore, providers: dict | None = None) -> None:
    """Attach every identity service to app.state, sharing user_store's engine.

    providers defaults to the ones configured in Settings. Split out of
    lifespan so tests can wire the same graph over an in-memory engine.
    """
    engine = user_store.engine
    token_store = RefreshTokenStore(engine)
    authority = TokenAuthority(settings, token_store, user_store)
    sso = SSOCoordinator(settings, authority, user_store)

    app.state.settings = settings
    app.state.user_store = user_store
    app.state.token_store = token_store
    app.state.authority = authority
    app.state.sso = sso
    app.state.role_graph = load_role_graph(settings.role_config_path or None)
    app.state.oauth_flow = OAuthLinkingFlow(
        settings,
        providers if providers is not None else build_providers(settings),
        user_store,
        OAuthStateStore(engine),
        sso,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build resources on startup and release them on shutdown.

    Everything before yield runs on startup; everything after runs on
    shutdown. The role graph is loaded eagerly so a cyclic or malformed role
    file stops the process before it serves a single request.
    """
    logger.info("Gatekeeper starting up")
    user_store = UserStore(create_store_engine(settings.database_url))
    build_services(app, user_store)
    logger.info(
        "Identity core initialized (roles=%d, providers=%s)",
        len(app.state.role_graph.roles),
        [p["name"] for p in app.state.oauth_flow.enabled_providers()],
    )

    yield

    app.state.user_store.close()
    logger.info("Gatekeeper shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Gatekeeper",
    description="Central authentication and authorization for company.com services.",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective: TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# Any https origin on an SSO domain may call the authority with credentials,
# which the cross-subdomain refresh cookie requires.
_origin_domains = "|".join(re.escape(d.lstrip(".")) for d in settings.sso_allowed_domains if d.strip())
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=rf"https://([a-z0-9-]+\.)*({_origin_domains})" if _origin_domains else None,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
#
# No version prefix: relying services and browsers hit /auth/* and /users/*
# directly, and the refresh cookie is scoped to the /auth path.
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(users_router, tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map any identity-core failure to its status code and stable error code."""
    if isinstance(exc, SecurityAnomaly):
        security_logger.warning(
            "%s on %s %s from %s",
            exc.code,
            request.method,
            request.url.path,
            request.client.host if request.client else "unknown",
        )
    headers = {"Cache-Control": "no-store"}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    return _error_response(exc.status_code, exc.code, exc.message, exc.detail, headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. Counted per client IP by api.limiter."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, get_remote_address(request))
    return _error_response(
        429,
        "rate_limited",
        "Too many requests.",
        str(exc.detail),
        {"Retry-After": str(int(getattr(exc, "retry_after", 60)))},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Report field locations only; echoing input values could leak passwords.
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return _error_response(422, "validation_error", "Request validation failed.", fields or None)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render HTTPException in the envelope.

    auth.dependencies raises with a ready-made {code, message, detail} dict
    and WWW-Authenticate headers; both pass through unchanged.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """The traceback goes to the log only, never to the response body."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health and key discovery
#
# Defined directly in main.py so they are reachable regardless of router
# registration. No rate limit: load balancers and relying services poll them.
# ---------------------------------------------------------------------------


@app.get("/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the database answers."""
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check database query failed")
        database = "error"
    return HealthResponse(status="ok" if database == "ok" else "degraded", version=VERSION, database=database)


@app.get("/.well-known/jwks.json", tags=["Health"])
async def jwks(request: Request) -> JSONResponse:
    """Public access-token verification key for relying services."""
    response = JSONResponse(content=request.app.state.authority.jwks())
    response.headers["Cache-Control"] = "public, max-age=300"
    return response
