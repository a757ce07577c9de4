"""
auth/errors.py -- Closed error taxonomy for the credential subsystem.

Every failure that leaves auth/ is an AuthError carrying an ErrorKind. Callers
match on the kind (and optional subject) structurally:

    except AuthError as exc:
        if exc.kind is ErrorKind.TOKEN_EXPIRED: ...

Token verification failures are always one of the specific token kinds, so the
transport layer can tell "needs re-login" (TOKEN_EXPIRED, TOKEN_INVALID) from
"configuration mismatch" (INVALID_ISSUER, INVALID_AUDIENCE).

Unexpected store failures are converted to INTERNAL by store_errors(). The
original exception is chained for logs but its text never reaches callers.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger("knowstack.auth")


class ErrorKind(str, Enum):
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    INVALID_CREDENTIAL = "invalid_credential"
    TOKEN_INVALID = "token_invalid"
    INVALID_ISSUER = "invalid_issuer"
    INVALID_AUDIENCE = "invalid_audience"
    INVALID_SUBJECT = "invalid_subject"
    TOKEN_EXPIRED = "token_expired"
    MISMATCH = "mismatch"
    UPSTREAM_FAILURE = "upstream_failure"
    INTERNAL = "internal"


# Subjects qualify ALREADY_EXISTS, NOT_FOUND and MISMATCH.
USERNAME = "username"
EMAIL = "email"
USER = "user"
CLAIMS = "claims"
DEFAULT_ROLE = "default_role"
TOKEN_RECORD = "token_record"
TOKEN_AND_USER = "token_and_user"

_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.ALREADY_EXISTS: "Resource already exists.",
    ErrorKind.NOT_FOUND: "Resource not found.",
    ErrorKind.INVALID_CREDENTIAL: "Invalid credentials.",
    ErrorKind.TOKEN_INVALID: "Invalid token.",
    ErrorKind.INVALID_ISSUER: "Invalid token issuer.",
    ErrorKind.INVALID_AUDIENCE: "Invalid token audience.",
    ErrorKind.INVALID_SUBJECT: "Invalid token subject.",
    ErrorKind.TOKEN_EXPIRED: "Token expired.",
    ErrorKind.MISMATCH: "Token and user mismatch.",
    ErrorKind.UPSTREAM_FAILURE: "Identity provider request failed.",
    ErrorKind.INTERNAL: "An unexpected error occurred.",
}


class AuthError(Exception):
    """A classified failure from the auth subsystem.

    Args:
        kind:    The ErrorKind.
        subject: What the kind refers to, e.g. USERNAME for ALREADY_EXISTS or
                 TOKEN_RECORD for NOT_FOUND. None when the kind is enough.
    """

    def __init__(self, kind: ErrorKind, subject: str | None = None) -> None:
        self.kind = kind
        self.subject = subject
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self.subject and self.kind in (ErrorKind.ALREADY_EXISTS, ErrorKind.NOT_FOUND):
            noun = self.subject.replace("_", " ").capitalize()
            verb = "already exists" if self.kind is ErrorKind.ALREADY_EXISTS else "not found"
            return f"{noun} {verb}."
        return _MESSAGES[self.kind]

    @property
    def code(self) -> str:
        """Stable machine-readable code, e.g. "not_found.token_record"."""
        if self.subject:
            return f"{self.kind.value}.{self.subject}"
        return self.kind.value

    def __repr__(self) -> str:
        return f"AuthError({self.kind.name}, subject={self.subject!r})"


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Convert unexpected SQLAlchemy failures into AuthError(INTERNAL).

    Known conditions (IntegrityError on insert, missing rows) are handled by
    the caller before they get here; anything else is logged with its
    traceback and re-raised without the driver's message.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure while trying to %s", action)
        raise AuthError(ErrorKind.INTERNAL) from exc
