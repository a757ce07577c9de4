"""
api/routes/v1/users.py -- Local account and session REST endpoints.

Routes:
  POST /api/v1/users/register         -- create a local account (201)
  POST /api/v1/users/login            -- email/password login; access + refresh token
  POST /api/v1/users/refresh          -- new access token from a refresh token
  POST /api/v1/users/logout           -- revoke a refresh token (idempotent)
  POST /api/v1/users/password-reset   -- request a reset link (always 200)
  GET  /api/v1/users/me               -- identity from the bearer token
  POST /api/v1/users/claims           -- replace a user's direct claims

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  [M5] Cache-Control: no-store on every response that carries a token.
  POST /claims requires the "users.manage_claims" claim.

AuthError raised by the services is rendered by the handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    PasswordResetRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    SetClaimsRequest,
    SuccessResponse,
)
from auth.claims import MANAGE_CLAIMS
from auth.dependencies import get_token_claims, require_claims
from auth.models import AccessTokenClaims
from auth.service import UserService
from core.config import get_settings

# Auth policy:
# - POST /users/register, /login, /refresh, /logout, /password-reset: public
# - GET  /users/me:     requires a valid access token (get_token_claims)
# - POST /users/claims: requires the MANAGE_CLAIMS claim (require_claims)
router = APIRouter()


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/users/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a local account on the default role."""
    service: UserService = request.app.state.user_service
    user = service.register(body.username, body.email, body.password)
    return RegisterResponse(id=user.id, username=user.username, email=user.email)


@limiter.limit(lambda: get_settings().login_rate_limit)  # [H2] must be ABOVE @router
@router.post("/users/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return access and refresh tokens."""
    service: UserService = request.app.state.user_service
    result = service.login(body.email, body.password, body.remember)
    return _no_store(
        LoginResponse(access_token=result.access_token, refresh_token=result.refresh_token).model_dump(by_alias=True)
    )


@router.post("/users/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Mint a new access token. The refresh token itself is not rotated."""
    service: UserService = request.app.state.user_service
    access_token = service.refresh(body.refresh_token)
    return _no_store(RefreshResponse(access_token=access_token).model_dump(by_alias=True))


@router.post("/users/logout", response_model=SuccessResponse)
def logout(request: Request, body: LogoutRequest) -> SuccessResponse:
    """Revoke a refresh token. Unknown tokens also return isSuccess=true."""
    service: UserService = request.app.state.user_service
    return SuccessResponse(is_success=service.logout(body.refresh_token))


@router.post("/users/password-reset", response_model=SuccessResponse)
def request_password_reset(request: Request, body: PasswordResetRequest) -> SuccessResponse:
    """Request a reset link. Same response whether or not the email is known."""
    service: UserService = request.app.state.user_service
    service.request_password_reset(body.email)
    return SuccessResponse()


@router.get("/users/me", response_model=MeResponse)
def me(claims: AccessTokenClaims = Depends(get_token_claims)) -> MeResponse:
    return MeResponse(
        user_id=claims.user_id,
        email=claims.email,
        username=claims.username,
        role_id=claims.role_id,
        claims=sorted(claims.claim_names),
    )


@router.post("/users/claims", response_model=MessageResponse)
def set_claims(
    request: Request,
    body: SetClaimsRequest,
    _claims: AccessTokenClaims = Depends(require_claims(MANAGE_CLAIMS)),
) -> MessageResponse:
    """Replace the direct claims of a user. Takes effect on their next access token."""
    service: UserService = request.app.state.user_service
    service.set_claims(body.user_id, body.claim_ids)
    return MessageResponse(message="Claims updated.")
