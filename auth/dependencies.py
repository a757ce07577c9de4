"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Only one auth method exists: "Authorization: Bearer <access token>". The
prefix must match exactly (see auth.tokens.extract_bearer).

try_get_token_claims() is the soft variant (returns None on failure).
get_token_claims() wraps it and raises HTTP 401 if unauthenticated.
require_claims(...) builds a dependency that additionally raises HTTP 403
unless every named claim is granted.

Layer rule: auth/dependencies.py may import from fastapi (for Request /
HTTPException) because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.claims import authorize
from auth.errors import AuthError
from auth.models import AccessTokenClaims
from auth.tokens import TokenService, extract_bearer

logger = logging.getLogger("knowstack.auth")


def try_get_token_claims(request: Request) -> AccessTokenClaims | None:
    """Verify the bearer access token on the request. Never raises."""
    token = extract_bearer(request.headers.get("Authorization"))
    if not token:
        return None
    tokens: TokenService = request.app.state.tokens
    try:
        return tokens.verify_access(token)
    except AuthError as exc:
        logger.info("Bearer token rejected: %s", exc.kind.value)
        return None


def get_token_claims(request: Request) -> AccessTokenClaims:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessTokenClaims = Depends(get_token_claims)): ...
    """
    claims = try_get_token_claims(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return claims


def require_claims(*required: str) -> Callable[[Request], AccessTokenClaims]:
    """Build a dependency requiring authentication plus ALL of the named claims.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        def route(claims: AccessTokenClaims = Depends(require_claims("users.manage_claims"))): ...
    """

    def dependency(request: Request) -> AccessTokenClaims:
        claims = get_token_claims(request)
        if not authorize(claims.claim_names, required):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Missing required claims."},
            )
        return claims

    return dependency
