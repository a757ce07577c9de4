"""
api/routes/v1/oauth.py -- Google OAuth login and callback.

Routes:
  GET /api/v1/oauth/google/login     -- redirect to Google with a fresh state
  GET /api/v1/oauth/google/callback  -- finish the flow; redirect to the frontend

The state value (CSRF protection) is 32 random bytes, stored in an httpOnly
"oauth_state" cookie for one hour and compared on the callback. The cookie is
cleared on every callback that gets past the state check.

Tokens are handed to the frontend in the URL FRAGMENT, which browsers never
send to a server, so they do not end up in access logs:
  {FRONTEND_URL}/oauth/google/callback#access_token=...&refresh_token=...&isNewUser=...
Every failure redirects to {FRONTEND_URL}/auth/error?message=... instead.
"""

from __future__ import annotations

import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse

from auth.errors import AuthError
from auth.oauth import OAuthLinker

logger = logging.getLogger("knowstack.api")

_STATE_COOKIE = "oauth_state"
_STATE_MAX_AGE = 3600

router = APIRouter()


def _linker(request: Request) -> OAuthLinker:
    linker: OAuthLinker | None = request.app.state.oauth_linker
    if linker is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "provider_disabled", "message": "Google login is not configured."},
        )
    return linker


def _error_redirect(request: Request, message: str) -> RedirectResponse:
    frontend_url = request.app.state.settings.frontend_url
    return RedirectResponse(f"{frontend_url}/auth/error?{urlencode({'message': message})}", status_code=307)


@router.get("/oauth/google/login")
def google_login(request: Request) -> RedirectResponse:
    """Redirect the browser to Google's consent page."""
    linker = _linker(request)
    state = secrets.token_urlsafe(32)
    resp = RedirectResponse(linker.authorization_url(state), status_code=307)
    resp.set_cookie(_STATE_COOKIE, state, max_age=_STATE_MAX_AGE, path="/", httponly=True, samesite="lax")
    return resp


@router.get("/oauth/google/callback")
def google_callback(request: Request, code: str = "", state: str = "") -> RedirectResponse:
    """Verify state, link or create the account, and redirect with tokens."""
    linker = _linker(request)

    saved_state = request.cookies.get(_STATE_COOKIE)
    if not saved_state or not state or not secrets.compare_digest(saved_state, state):
        logger.warning("OAuth callback rejected: state mismatch")
        return _error_redirect(request, "Invalid state")

    if not code:
        resp = _error_redirect(request, "Invalid code")
        resp.delete_cookie(_STATE_COOKIE, path="/")
        return resp

    try:
        result = linker.handle_callback(code)
    except AuthError as exc:
        logger.warning("OAuth callback failed: %s", exc.code)
        resp = _error_redirect(request, "Failed to handle Google callback")
        resp.delete_cookie(_STATE_COOKIE, path="/")
        return resp

    fragment = urlencode(
        {
            "access_token": result.access_token,
            "refresh_token": result.refresh_token,
            "isNewUser": "true" if result.is_new_user else "false",
        }
    )
    frontend_url = request.app.state.settings.frontend_url
    resp = RedirectResponse(f"{frontend_url}/oauth/google/callback#{fragment}", status_code=307)
    resp.delete_cookie(_STATE_COOKIE, path="/")
    resp.headers["Cache-Control"] = "no-store"
    return resp
