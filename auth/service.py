"""
auth/service.py -- Local account operations: register, login, claims, reset.

UserService is the seam the transport layer calls. It composes the
PasswordHasher, TokenService and RefreshTokenRotator and owns the mapping from
store outcomes to AuthError kinds.

Login timing: unknown emails still run a verify against a dummy credential so
the response time does not reveal whether the account exists [C1].
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import errors
from auth.errors import AuthError, ErrorKind, store_errors
from auth.models import LOCAL_PROVIDER, LoginResult, PasswordResetToken, User
from auth.passwords import PasswordHasher
from auth.sessions import RefreshTokenRotator
from auth.store import PasswordResetStore, RoleRepository, UserRepository
from auth.tokens import TokenService
from core.config import AuthConfig

logger = logging.getLogger("knowstack.auth")


def mask_email(email: str) -> str:
    """Return a log-safe form of an email: "alice@x.io" -> "a***e@x.io"."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    if len(local) <= 2:
        return f"**@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


def insert_account(users: UserRepository, user: User) -> int:
    """Insert user, mapping a write-time uniqueness conflict to ALREADY_EXISTS.

    Existence checks done before the insert can race with a concurrent
    registration; the UNIQUE constraints are the real guard [M1].
    """
    try:
        return users.create_user(user)
    except IntegrityError as exc:
        with store_errors("classify an account conflict"):
            if users.get_by_username(user.username) is not None:
                subject = errors.USERNAME
            elif users.get_by_email(user.email) is not None:
                subject = errors.EMAIL
            else:
                # external_id, or a constraint this layer has no name for
                subject = None
        logger.info("Account insert lost a uniqueness race on %s", subject or "another unique column")
        raise AuthError(ErrorKind.ALREADY_EXISTS, subject) from exc
    except SQLAlchemyError as exc:
        logger.exception("Store failure while trying to create an account")
        raise AuthError(ErrorKind.INTERNAL) from exc


class UserService:
    def __init__(
        self,
        users: UserRepository,
        roles: RoleRepository,
        resets: PasswordResetStore,
        hasher: PasswordHasher,
        tokens: TokenService,
        rotator: RefreshTokenRotator,
        config: AuthConfig,
    ) -> None:
        self._users = users
        self._roles = roles
        self._resets = resets
        self._hasher = hasher
        self._tokens = tokens
        self._rotator = rotator
        self._config = config
        # Computed once so the first failed login is not measurably slower.
        self._dummy_hash = hasher.hash("knowstack_timing_dummy")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> User:
        """Create a local account on the default role.

        Raises:
            AuthError: ALREADY_EXISTS(username|email), NOT_FOUND(default_role).
        """
        with store_errors("check for an existing account"):
            if self._users.get_by_username(username) is not None:
                logger.info("Registration rejected: username already exists")
                raise AuthError(ErrorKind.ALREADY_EXISTS, errors.USERNAME)
            if self._users.get_by_email(email) is not None:
                logger.info("Registration rejected: email %s already exists", mask_email(email))
                raise AuthError(ErrorKind.ALREADY_EXISTS, errors.EMAIL)
            default_role = self._roles.get_default_role()
        if default_role is None:
            logger.error("No default role configured; cannot register %s", mask_email(email))
            raise AuthError(ErrorKind.NOT_FOUND, errors.DEFAULT_ROLE)

        user = User(
            username=username,
            email=email,
            role_id=default_role.id,
            password_hash=self._hasher.hash(password),
            provider=LOCAL_PROVIDER,
        )
        user_id = insert_account(self._users, user)
        logger.info("Registered user %d (%s)", user_id, mask_email(email))
        with store_errors("load the new account"):
            created = self._users.get_by_id(user_id)
        if created is None:
            raise AuthError(ErrorKind.INTERNAL)
        return created

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, remember: bool = False) -> LoginResult:
        """Authenticate by email + password and open a refresh-token session.

        Raises:
            AuthError: NOT_FOUND(user) for an unknown email, INVALID_CREDENTIAL
                for a wrong password or a password-less (OAuth-only) account.
        """
        with store_errors("look up an account for login"):
            user = self._users.get_by_email(email)
        if user is None:
            self._hasher.verify(password, self._dummy_hash)
            logger.info("Login rejected: no account for %s", mask_email(email))
            raise AuthError(ErrorKind.NOT_FOUND, errors.USER)
        if not user.password_hash or not self._hasher.verify(password, user.password_hash):
            logger.info("Login rejected: bad password for user %d", user.id)
            raise AuthError(ErrorKind.INVALID_CREDENTIAL)

        access_token = self._tokens.issue_access_for(user)
        refresh_token = self._rotator.open_session(user.id, remember)
        logger.info("User %d logged in", user.id)
        return LoginResult(access_token=access_token, refresh_token=refresh_token)

    def refresh(self, refresh_token: str) -> str:
        return self._rotator.refresh(refresh_token)

    def logout(self, refresh_token: str) -> bool:
        return self._rotator.logout(refresh_token)

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def set_claims(self, user_id: int, claim_ids: list[int]) -> None:
        """Replace the user's directly assigned claims.

        Raises:
            AuthError: NOT_FOUND(user), NOT_FOUND(claims) if any id is unknown.
        """
        with store_errors("set user claims"):
            if self._users.get_by_id(user_id) is None:
                raise AuthError(ErrorKind.NOT_FOUND, errors.USER)
            found = self._roles.get_claims_by_ids(claim_ids)
            if {c.id for c in found} != set(claim_ids):
                raise AuthError(ErrorKind.NOT_FOUND, errors.CLAIMS)
            self._users.set_claims(user_id, claim_ids)
        logger.info("Set %d direct claims on user %d", len(set(claim_ids)), user_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> str | None:
        """Issue a password reset token for email.

        Always succeeds from the caller's point of view so account existence is
        not revealed. Returns the reset URL when one was produced, else None.
        Earlier unused tokens for the same user are invalidated first.
        """
        with store_errors("look up an account for password reset"):
            user = self._users.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown %s", mask_email(email))
            return None

        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self._config.password_reset_expires_hours)
        with store_errors("store a password reset token"):
            self._resets.invalidate_unused(user.id)
            self._resets.create(PasswordResetToken(user_id=user.id, token=token, expires_at=expires_at.isoformat()))

        reset_url = f"{self._config.frontend_url}/reset-password?token={token}"
        # TODO: hand reset_url to a mail sender once SMTP settings exist.
        logger.info("Password reset link produced for %s", mask_email(user.email))
        return reset_url
