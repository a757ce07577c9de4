"""
auth/sessions.py -- Refresh-token bookkeeping: open, refresh, logout.

Opening a session is a two-step protocol:

    record_id = rotator.reserve(user_id)            # row with token=NULL
    signed    = tokens.issue_refresh(uid, str(record_id), remember)
    rotator.finalize(record_id, signed)             # write the token back

The refresh token embeds its record id, and the id exists only after the
insert. The two writes are not atomic: a failure between them leaves an
orphaned token-less row. Nothing can reference that row (no token was ever
handed out), so it is harmless and left for housekeeping.

refresh() mints a new ACCESS token only; the refresh token is reused as-is.
By default it does not look at the record's revoked flag (historical
behavior). AuthConfig.refresh_check_revoked=True turns that check on.

logout() revokes by exact token string, not by decoded claims, and is
idempotent: an unknown token is a successful no-op.
"""

from __future__ import annotations

import logging

from auth import errors
from auth.errors import AuthError, ErrorKind, store_errors
from auth.store import RefreshTokenRepository, UserRepository
from auth.tokens import TokenService
from core.config import AuthConfig

logger = logging.getLogger("knowstack.auth")


class RefreshTokenRotator:
    def __init__(
        self,
        tokens: TokenService,
        refresh_tokens: RefreshTokenRepository,
        users: UserRepository,
        config: AuthConfig,
    ) -> None:
        self._tokens = tokens
        self._refresh_tokens = refresh_tokens
        self._users = users
        self._config = config

    # ------------------------------------------------------------------
    # Two-phase open
    # ------------------------------------------------------------------

    def reserve(self, user_id: int) -> int:
        """Persist an empty record for user_id and return its id."""
        with store_errors("reserve a refresh token record"):
            return self._refresh_tokens.reserve(user_id)

    def finalize(self, record_id: int, signed_token: str) -> None:
        """Write the signed refresh token into a reserved record."""
        with store_errors("finalize a refresh token record"):
            self._refresh_tokens.finalize(record_id, signed_token)

    def open_session(self, user_id: int, remember: bool) -> str:
        """Reserve, sign and finalize. Returns the signed refresh token."""
        record_id = self.reserve(user_id)
        signed = self._tokens.issue_refresh(str(user_id), str(record_id), remember)
        self.finalize(record_id, signed)
        logger.info("Refresh token %d issued for user %d (remember=%s)", record_id, user_id, remember)
        return signed

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> str:
        """Validate a refresh token and return a new access token.

        Raises:
            AuthError: the verifier's kind on a bad token; INTERNAL if the ids
                inside it are not decimal; NOT_FOUND(token_record) if the
                record is gone; MISMATCH(token_and_user) if the record belongs
                to another user; NOT_FOUND(user) if the owner was removed.
        """
        claims = self._tokens.validate_refresh(refresh_token)
        token_id = _parse_id(claims.token_id, "tokenID")
        user_id = _parse_id(claims.user_id, "uid")

        with store_errors("look up a refresh token record"):
            record = self._refresh_tokens.get_by_id(token_id)
        if record is None:
            logger.info("Refresh rejected: token record %d not found", token_id)
            raise AuthError(ErrorKind.NOT_FOUND, errors.TOKEN_RECORD)
        if record.user_id != user_id:
            logger.warning("Refresh rejected: record %d does not belong to user %d", token_id, user_id)
            raise AuthError(ErrorKind.MISMATCH, errors.TOKEN_AND_USER)
        if self._config.refresh_check_revoked and record.revoked:
            logger.info("Refresh rejected: token record %d is revoked", token_id)
            raise AuthError(ErrorKind.TOKEN_INVALID)

        with store_errors("load the refresh token owner"):
            user = self._users.get_by_id(user_id)
        if user is None:
            raise AuthError(ErrorKind.NOT_FOUND, errors.USER)
        return self._tokens.issue_access_for(user)

    def logout(self, refresh_token: str) -> bool:
        """Revoke the record holding refresh_token. Always True unless the store fails."""
        with store_errors("revoke a refresh token"):
            revoked = self._refresh_tokens.revoke_by_token(refresh_token)
        if not revoked:
            logger.info("Logout for an unknown refresh token; nothing to revoke")
        return True


def _parse_id(value: str, field_name: str) -> int:
    if not (value.isascii() and value.isdigit()):
        logger.error("Refresh token carries a non-numeric %s", field_name)
        raise AuthError(ErrorKind.INTERNAL)
    return int(value)
