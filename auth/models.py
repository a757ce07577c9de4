"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services
do the work; these only own the domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

LOCAL_PROVIDER = "local"
GOOGLE_PROVIDER = "google"


@dataclass(frozen=True)
class Claim:
    """A named permission atom. Unique by name."""

    name: str
    id: int | None = None


@dataclass
class Role:
    """A named bundle of claims. Exactly one role should have is_default=True.

    The default role is assigned to every newly created account, local or OAuth.
    """

    name: str
    id: int | None = None
    is_default: bool = False
    claims: list[Claim] = field(default_factory=list)


@dataclass
class User:
    """A local account, optionally linked to an external identity.

    password_hash is empty for accounts created through OAuth -- they never
    authenticate with a password. external_id is None until an OAuth identity
    is linked, either at creation or by backfilling on first OAuth login.

    role is the hydrated Role (with its claims) when loaded from the store.
    """

    username: str
    email: str
    role_id: int
    id: int | None = None
    password_hash: str = ""
    provider: str = LOCAL_PROVIDER
    external_id: str | None = None
    profile_image: str = ""
    role: Role | None = None
    claims: list[Claim] = field(default_factory=list)
    created_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """Persisted counterpart of a refresh token.

    token is None between reserve (row created to obtain id) and finalize
    (signed string written back). Records are revoked, never deleted.
    """

    user_id: int
    id: int | None = None
    token: str | None = None
    revoked: bool = False
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    user_id: int
    token: str
    expires_at: str
    id: int | None = None
    is_used: bool = False
    created_at: str | None = None


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified contents of an access token. subject always equals user_id."""

    user_id: str
    email: str
    username: str
    role_id: int
    claim_names: list[str]
    issuer: str
    audience: list[str]
    subject: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenClaims:
    """Verified contents of a refresh token. token_id references a RefreshTokenRecord."""

    user_id: str
    token_id: str
    issuer: str
    audience: list[str]
    subject: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class OAuthProfile:
    """Normalized profile returned by the external identity provider."""

    external_id: str
    email: str
    verified_email: bool = False
    name: str = ""
    picture: str = ""
    locale: str = ""


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class OAuthResult:
    access_token: str
    refresh_token: str
    is_new_user: bool
