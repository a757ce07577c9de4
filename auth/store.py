"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore, RoleStore, RefreshTokenStore and
PasswordResetStore are the repositories; the _row_to_* functions are the
mappers. Services never touch SQL directly and depend only on the narrow
Protocol interfaces declared at the top of this module, so tests can swap in
any object with the same methods.

All four stores share one Engine created by create_auth_engine(); the user
loader joins across users, roles and claims in one connection.

Security:
  All queries use bound parameters. No f-strings in SQL.

  username, email and external_id are UNIQUE at the schema level. The
  services do a check-then-insert, which leaves a race window; the UNIQUE
  constraint closes it by raising IntegrityError, which services map to
  ALREADY_EXISTS. external_id is stored as NULL (never "") when unlinked,
  because SQLite and PostgreSQL both treat NULLs as distinct under UNIQUE.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.claims import MANAGE_CLAIMS
from auth.models import LOCAL_PROVIDER, Claim, PasswordResetToken, RefreshTokenRecord, Role, User

# ---------------------------------------------------------------------------
# Repository interfaces
# ---------------------------------------------------------------------------


class UserRepository(Protocol):
    def create_user(self, user: User) -> int: ...
    def get_by_id(self, user_id: int) -> User | None: ...
    def get_by_username(self, username: str) -> User | None: ...
    def get_by_email(self, email: str) -> User | None: ...
    def get_by_external_id_or_email(self, external_id: str, email: str) -> User | None: ...
    def username_exists(self, username: str) -> bool: ...
    def link_external(self, user_id: int, provider: str, external_id: str, profile_image: str) -> None: ...
    def set_claims(self, user_id: int, claim_ids: Iterable[int]) -> None: ...


class RoleRepository(Protocol):
    def get_default_role(self) -> Role | None: ...
    def get_by_name(self, name: str) -> Role | None: ...
    def get_claims_by_ids(self, claim_ids: Iterable[int]) -> list[Claim]: ...


class RefreshTokenRepository(Protocol):
    def reserve(self, user_id: int) -> int: ...
    def finalize(self, record_id: int, token: str) -> None: ...
    def get_by_id(self, record_id: int) -> RefreshTokenRecord | None: ...
    def get_by_token(self, token: str) -> RefreshTokenRecord | None: ...
    def revoke_by_token(self, token: str) -> bool: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("is_default", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_claims = Table(
    "claims",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_role_claims = Table(
    "role_claims",
    metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("claim_id", Integer, ForeignKey("claims.id"), primary_key=True),
)

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False, server_default=""),  # "" for OAuth-only users
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("provider", String(30), nullable=False, server_default=LOCAL_PROVIDER),
    Column("external_id", String(255), unique=True),  # NULL until linked
    Column("profile_image", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_user_claims = Table(
    "user_claims",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("claim_id", Integer, ForeignKey("claims.id"), primary_key=True),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, index=True),  # NULL between reserve and finalize
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("is_revoked", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_used", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str) -> Engine:
    """Create the shared Engine and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Roles and claims
# ---------------------------------------------------------------------------


class RoleStore:
    """Repository for Role and Claim entities.

    Usage:
        roles = RoleStore(engine)
        roles.seed_defaults()
        default = roles.get_default_role()
    """

    # Seeded on startup. "user" is the role every new account receives.
    DEFAULT_ROLES: tuple[tuple[str, bool], ...] = (("user", True), ("admin", False))
    # Claims every deployment's admin role holds, so one admin can grant the rest.
    DEFAULT_ROLE_CLAIMS: dict[str, tuple[str, ...]] = {"admin": (MANAGE_CLAIMS,)}

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def seed_defaults(self) -> list[str]:
        """Create any missing default roles and role claims.

        Idempotent: safe to run on every startup. Returns the role names
        that were created.
        """
        created: list[str] = []
        for name, is_default in self.DEFAULT_ROLES:
            if self.get_by_name(name) is None:
                self.create_role(name, is_default=is_default)
                created.append(name)

        for role_name, claim_names in self.DEFAULT_ROLE_CLAIMS.items():
            role = self.get_by_name(role_name)
            held = {claim.name for claim in role.claims}
            for claim_name in claim_names:
                if claim_name in held:
                    continue
                claim = self.get_claim_by_name(claim_name)
                claim_id = claim.id if claim is not None else self.create_claim(claim_name)
                self.grant_claim(role.id, claim_id)
        return created

    def create_role(self, name: str, is_default: bool = False) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_roles.insert().values(name=name, is_default=is_default, created_at=_now_iso()))
            conn.commit()
            return result.inserted_primary_key[0]

    def create_claim(self, name: str) -> int:
        """Insert a claim. Raises IntegrityError if the name is taken."""
        with self.engine.connect() as conn:
            result = conn.execute(_claims.insert().values(name=name, created_at=_now_iso()))
            conn.commit()
            return result.inserted_primary_key[0]

    def grant_claim(self, role_id: int, claim_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_role_claims.insert().values(role_id=role_id, claim_id=claim_id))
            conn.commit()

    def get_default_role(self) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select().where(_roles.c.is_default.is_(True)).order_by(_roles.c.id).limit(1)
            ).fetchone()
            return _load_role(conn, row) if row is not None else None

    def get_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
            return _load_role(conn, row) if row is not None else None

    def get_claim_by_name(self, name: str) -> Claim | None:
        with self.engine.connect() as conn:
            row = conn.execute(_claims.select().where(_claims.c.name == name)).fetchone()
        return _row_to_claim(row) if row is not None else None

    def get_claims_by_ids(self, claim_ids: Iterable[int]) -> list[Claim]:
        ids = list(claim_ids)
        if not ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(_claims.select().where(_claims.c.id.in_(ids)).order_by(_claims.c.id)).fetchall()
        return [_row_to_claim(r) for r in rows]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities and their direct claim associations.

    Every getter returns a hydrated User: its direct claims plus its Role with
    the role's claims, so effective claims can be merged without more queries.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError on a username, email or
        external_id conflict. Callers map that to ALREADY_EXISTS.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    role_id=user.role_id,
                    provider=user.provider,
                    external_id=user.external_id or None,
                    profile_image=user.profile_image,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        return self._get_one(_users.c.id == user_id)

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive match."""
        return self._get_one(_users.c.username == username)

    def get_by_email(self, email: str) -> User | None:
        return self._get_one(_users.c.email == email)

    def get_by_external_id_or_email(self, external_id: str, email: str) -> User | None:
        """First user (lowest id) whose external_id OR email matches."""
        return self._get_one(or_(_users.c.external_id == external_id, _users.c.email == email))

    def username_exists(self, username: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.username == username).limit(1)).fetchone()
        return row is not None

    def link_external(self, user_id: int, provider: str, external_id: str, profile_image: str) -> None:
        """Backfill the external-identity fields on an existing account."""
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    provider=provider,
                    external_id=external_id or None,
                    profile_image=profile_image,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()

    def set_claims(self, user_id: int, claim_ids: Iterable[int]) -> None:
        """Replace the user's direct claims with exactly claim_ids."""
        ids = sorted(set(claim_ids))
        with self.engine.begin() as conn:
            conn.execute(_user_claims.delete().where(_user_claims.c.user_id == user_id))
            if ids:
                conn.execute(_user_claims.insert(), [{"user_id": user_id, "claim_id": cid} for cid in ids])

    def _get_one(self, condition) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(condition).order_by(_users.c.id).limit(1)).fetchone()
            if row is None:
                return None
            user = _row_to_user(row)
            user.claims = _claims_for(conn, _user_claims, _user_claims.c.user_id, user.id)
            role_row = conn.execute(_roles.select().where(_roles.c.id == user.role_id)).fetchone()
            user.role = _load_role(conn, role_row) if role_row is not None else None
            return user


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for RefreshTokenRecord entities.

    reserve() and finalize() are two separate writes on purpose: the signed
    token embeds the record id, which exists only after the insert. A crash
    between them leaves a token-less row that no refresh token references.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def reserve(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(user_id=user_id, token=None, is_revoked=False, created_at=_now_iso())
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def finalize(self, record_id: int, token: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.update().where(_refresh_tokens.c.id == record_id).values(token=token))
            conn.commit()

    def get_by_id(self, record_id: int) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == record_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def get_by_token(self, token: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_by_token(self, token: str) -> bool:
        """Mark every record holding this token string revoked. False if none matched."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update().where(_refresh_tokens.c.token == token).values(is_revoked=True)
            )
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Password reset tokens
# ---------------------------------------------------------------------------


class PasswordResetStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, reset: PasswordResetToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.insert().values(
                    token=reset.token,
                    user_id=reset.user_id,
                    expires_at=reset.expires_at,
                    is_used=False,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def invalidate_unused(self, user_id: int) -> int:
        """Mark every unused reset token for the user as used. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_reset_tokens.update()
                .where((_password_reset_tokens.c.user_id == user_id) & (_password_reset_tokens.c.is_used.is_(False)))
                .values(is_used=True)
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _claims_for(conn: Connection, link_table: Table, owner_column, owner_id: int) -> list[Claim]:
    rows = conn.execute(
        select(_claims)
        .join(link_table, link_table.c.claim_id == _claims.c.id)
        .where(owner_column == owner_id)
        .order_by(_claims.c.id)
    ).fetchall()
    return [_row_to_claim(r) for r in rows]


def _load_role(conn: Connection, row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        is_default=bool(row.is_default),
        claims=_claims_for(conn, _role_claims, _role_claims.c.role_id, row.id),
    )


def _row_to_claim(row) -> Claim:
    return Claim(id=row.id, name=row.name)


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash or "",
        role_id=row.role_id,
        provider=row.provider,
        external_id=row.external_id,
        profile_image=row.profile_image or "",
        created_at=row.created_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        revoked=bool(row.is_revoked),
        created_at=row.created_at,
    )

