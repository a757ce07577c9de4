"""
auth/tokens.py -- Access and refresh JWT issue/verification.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with
       DIFFERENT secrets so one can never be accepted in place of the other.
       Verification accepts only the HMAC family (HS256/384/512); "none" and
       asymmetric algorithms are rejected as TOKEN_INVALID.

  Claim names are a compatibility contract with already-issued tokens:
       access:  uid, email, username, role_id, claim_ids + iss/aud/sub/iat/exp
       refresh: uid, tokenID + iss/aud/sub/iat/exp
       aud is always written as a one-element list.

  Verification order: signature/structure/expiry (jose) -> issuer -> subject
       (access only) -> audience. Each failure raises its own ErrorKind so
       callers can distinguish "log in again" from "misconfigured service".

  Refresh tokens get an explicit expires-at check after decoding, on top of
       jose's own exp validation.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import ExpiredSignatureError, JWTError, jwt

from auth.claims import effective_claims
from auth.errors import AuthError, ErrorKind
from auth.models import AccessTokenClaims, RefreshTokenClaims
from core.config import AuthConfig

if TYPE_CHECKING:
    from auth.models import User

logger = logging.getLogger("knowstack.auth")

_ALGORITHM = "HS256"
_HMAC_ALGORITHMS = ["HS256", "HS384", "HS512"]

# Issuer, audience and subject are checked by hand so each mismatch maps to
# its own ErrorKind instead of jose's generic JWTClaimsError.
_DECODE_OPTIONS = {
    "verify_aud": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
    "verify_at_hash": False,
}

_BEARER_PREFIX = "Bearer "


def extract_bearer(header_value: str | None) -> str:
    """Return the token from an "Authorization: Bearer <token>" value, or "".

    The prefix is matched exactly: capital B, one space, nothing else.
    """
    if header_value and len(header_value) > len(_BEARER_PREFIX) and header_value.startswith(_BEARER_PREFIX):
        return header_value[len(_BEARER_PREFIX) :]
    return ""


class TokenService:
    """Issues and verifies access and refresh tokens for one AuthConfig.

    Usage:
        tokens = TokenService(settings.auth_config())
        signed = tokens.issue_access("42", "a@example.com", "alice", 1, ["posts.read"])
        claims = tokens.verify_access(signed)
    """

    def __init__(self, config: AuthConfig) -> None:
        self._config = config

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access(
        self,
        user_id: str,
        email: str,
        username: str,
        role_id: int,
        claim_names: list[str],
        expires_minutes: int = 0,
    ) -> str:
        """Sign an access token.

        Args:
            user_id:         Decimal string of the user's id; also the subject.
            claim_names:     Merged role + user claim names.
            expires_minutes: Override for the configured lifetime. 0 uses
                             AuthConfig.access_expires_minutes.
        """
        minutes = expires_minutes if expires_minutes > 0 else self._config.access_expires_minutes
        now = datetime.now(timezone.utc)
        payload = {
            "uid": user_id,
            "email": email,
            "username": username,
            "role_id": role_id,
            "claim_ids": list(claim_names),
            "iss": self._config.jwt_issuer,
            "aud": [self._config.jwt_audience],
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(minutes=minutes),
        }
        return jwt.encode(payload, self._config.jwt_secret, algorithm=_ALGORITHM)

    def issue_access_for(self, user: User) -> str:
        """Sign an access token for a hydrated User using its effective claims."""
        return self.issue_access(
            str(user.id),
            user.email,
            user.username,
            user.role_id,
            effective_claims(user),
        )

    def verify_access(self, token: str) -> AccessTokenClaims:
        payload = self._decode(token, self._config.jwt_secret)
        self._check_issuer(payload)
        if payload.get("sub") != payload.get("uid"):
            raise AuthError(ErrorKind.INVALID_SUBJECT)
        audience = self._check_audience(payload)

        try:
            return AccessTokenClaims(
                user_id=_require_str(payload, "uid"),
                email=_require_str(payload, "email"),
                username=_require_str(payload, "username"),
                role_id=int(payload["role_id"]),
                claim_names=[str(name) for name in payload.get("claim_ids") or []],
                issuer=payload["iss"],
                audience=audience,
                subject=payload["sub"],
                issued_at=_from_timestamp(payload["iat"]),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError(ErrorKind.TOKEN_INVALID) from exc

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def issue_refresh(self, user_id: str, token_id: str, remember: bool) -> str:
        """Sign a refresh token bound to a RefreshTokenRecord id.

        remember=True selects the longer refresh_expires_days_remember lifetime.
        """
        days = self._config.refresh_expires_days_remember if remember else self._config.refresh_expires_days
        now = datetime.now(timezone.utc)
        payload = {
            "uid": user_id,
            "tokenID": token_id,
            "iss": self._config.jwt_issuer,
            "aud": [self._config.jwt_audience],
            "sub": user_id,
            "iat": now,
            "exp": now + timedelta(days=days),
        }
        return jwt.encode(payload, self._config.jwt_refresh_secret, algorithm=_ALGORITHM)

    def validate_refresh(self, token: str) -> RefreshTokenClaims:
        payload = self._decode(token, self._config.jwt_refresh_secret)
        self._check_issuer(payload)
        audience = self._check_audience(payload)

        try:
            claims = RefreshTokenClaims(
                user_id=_require_str(payload, "uid"),
                token_id=_require_str(payload, "tokenID"),
                issuer=payload["iss"],
                audience=audience,
                subject=payload.get("sub", ""),
                issued_at=_from_timestamp(payload["iat"]),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError(ErrorKind.TOKEN_INVALID) from exc

        # jose has already rejected an expired exp with these options; this
        # check still holds if _DECODE_OPTIONS ever turns verify_exp off.
        if claims.expires_at < datetime.now(timezone.utc):
            raise AuthError(ErrorKind.TOKEN_EXPIRED)
        return claims

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _decode(self, token: str, secret: str) -> dict:
        try:
            return jwt.decode(token, secret, algorithms=_HMAC_ALGORITHMS, options=_DECODE_OPTIONS)
        except ExpiredSignatureError as exc:
            raise AuthError(ErrorKind.TOKEN_EXPIRED) from exc
        except JWTError as exc:
            raise AuthError(ErrorKind.TOKEN_INVALID) from exc

    def _check_issuer(self, payload: dict) -> None:
        if payload.get("iss") != self._config.jwt_issuer:
            raise AuthError(ErrorKind.INVALID_ISSUER)

    def _check_audience(self, payload: dict) -> list[str]:
        aud = payload.get("aud")
        audience = [aud] if isinstance(aud, str) else list(aud or [])
        if self._config.jwt_audience not in audience:
            raise AuthError(ErrorKind.INVALID_AUDIENCE)
        return audience


def _require_str(payload: dict, key: str) -> str:
    value = payload[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _from_timestamp(value) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
