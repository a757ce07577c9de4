"""
api/main.py -- FastAPI application entry point for knowstack.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware    -- adds CORS headers for the configured frontend origin
  2. SlowAPIMiddleware -- enforces per-route rate limits from api.limiter

Lifespan wires the object graph once at startup: Settings -> AuthConfig ->
Engine -> stores -> hasher/token service -> rotator -> UserService and
OAuthLinker. Every component receives its collaborators explicitly; nothing
below this module reads settings on its own. Shutdown disposes the engine.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError, ErrorKind
from auth.oauth import GoogleProvider, OAuthLinker
from auth.passwords import PasswordHasher
from auth.service import UserService
from auth.sessions import RefreshTokenRotator
from auth.store import PasswordResetStore, RefreshTokenStore, RoleStore, UserStore, create_auth_engine
from auth.tokens import TokenService
from core.config import Settings, get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("knowstack.api")

# HTTP status per AuthError kind. Token problems are all 401 so clients
# re-authenticate; the error code in the body tells them which one it was.
_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_CREDENTIAL: 401,
    ErrorKind.TOKEN_INVALID: 401,
    ErrorKind.INVALID_ISSUER: 401,
    ErrorKind.INVALID_AUDIENCE: 401,
    ErrorKind.INVALID_SUBJECT: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.MISMATCH: 401,
    ErrorKind.UPSTREAM_FAILURE: 502,
    ErrorKind.INTERNAL: 500,
}


# ---------------------------------------------------------------------------
# Object graph
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings, oauth_provider=None) -> None:
    """Construct every auth component and attach it to app.state.

    oauth_provider overrides the Google provider (tests pass a fake). When
    None and Google credentials are not configured, OAuth routes return 404.
    """
    config = settings.auth_config()
    engine = create_auth_engine(settings.database_url)
    users = UserStore(engine)
    roles = RoleStore(engine)
    created = roles.seed_defaults()
    if created:
        logger.info("Seeded roles: %s", ", ".join(created))

    tokens = TokenService(config)
    rotator = RefreshTokenRotator(tokens, RefreshTokenStore(engine), users, config)
    hasher = PasswordHasher(config.hash_secret)

    if oauth_provider is None and settings.google_enabled:
        oauth_provider = GoogleProvider.from_settings(settings)

    app.state.settings = settings
    app.state.engine = engine
    app.state.tokens = tokens
    app.state.user_service = UserService(users, roles, PasswordResetStore(engine), hasher, tokens, rotator, config)
    app.state.oauth_linker = (
        OAuthLinker(oauth_provider, users, roles, tokens, rotator) if oauth_provider is not None else None
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service graph on startup; release the DB pool on shutdown."""
    logger.info("knowstack API starting up")
    build_services(app, get_settings())
    logger.info("Auth initialized (google_oauth=%s)", app.state.oauth_linker is not None)

    yield

    app.state.engine.dispose()
    logger.info("knowstack API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="knowstack API",
    description="Accounts, sessions and claims-based authorization.",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_url],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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
# ---------------------------------------------------------------------------

app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a classified auth failure. INTERNAL never carries detail."""
    return JSONResponse(
        status_code=_STATUS_BY_KIND[exc.kind],
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with the first failing field, like the original validation responses."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ("body",)))
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message=first.get("msg", "Request validation failed."),
                detail=location,
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for HTTP exceptions, including router 404s.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit --
# health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        database = "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})
