"""
tests/conftest.py -- Shared test fixtures for knowstack unit and integration tests.

This module provides:
  - auth_config: a fixed AuthConfig with known secrets (no environment reads)
  - stores / services: in-memory SQLite stores and the auth components on top
  - FakeProvider: an OAuth provider double honouring exchange_code/fetch_profile
  - api_client: TestClient over the real app with a patched lifespan

Design: unit tests use plain "sqlite:///:memory:" because they run on one
thread. Route tests use a named shared-memory SQLite URI instead, because
TestClient runs handlers in a thread pool and a plain :memory: DB is
per-connection, presenting a blank schema to each worker thread.

DEBUG and LOGIN_RATE_LIMIT must be set before any api/ or core/ import:
get_settings() is called at import time by api/main.py.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set before any auth/core/api import so get_settings() can
# auto-generate JWT secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Route tests log in far more than 10 times a minute from one address.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, build_services
from auth.claims import MANAGE_CLAIMS
from auth.errors import AuthError, ErrorKind
from auth.models import GOOGLE_PROVIDER, OAuthProfile
from auth.oauth import OAuthLinker
from auth.passwords import PasswordHasher
from auth.service import UserService
from auth.sessions import RefreshTokenRotator
from auth.store import PasswordResetStore, RefreshTokenStore, RoleStore, UserStore, create_auth_engine, metadata
from auth.tokens import TokenService
from core.config import AuthConfig, Settings

ACCESS_SECRET = "test-access-secret-0123456789abcdef0123456789"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012345678"

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"


# ---------------------------------------------------------------------------
# OAuth provider double
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-process stand-in for GoogleProvider. Never touches the network.

    Set .profile to control what the callback "receives"; set .fail to make
    exchange_code raise UPSTREAM_FAILURE as a broken provider would.
    """

    name = GOOGLE_PROVIDER

    def __init__(self, profile: OAuthProfile | None = None) -> None:
        self.profile = profile or OAuthProfile(external_id="g-1", email="alice@example.com", verified_email=True)
        self.fail = False
        self.codes: list[str] = []

    def authorization_url(self, state: str) -> str:
        return f"https://accounts.example.test/o/oauth2/auth?state={state}"

    def exchange_code(self, code: str) -> str:
        if self.fail:
            raise AuthError(ErrorKind.UPSTREAM_FAILURE)
        self.codes.append(code)
        return f"provider-token-{code}"

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        return self.profile


# ---------------------------------------------------------------------------
# Unit-level fixtures: one fresh in-memory database per test
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Every auth component wired over one in-memory engine."""

    engine: Engine
    config: AuthConfig
    users: UserStore
    roles: RoleStore
    refresh_tokens: RefreshTokenStore
    resets: PasswordResetStore
    hasher: PasswordHasher
    tokens: TokenService
    rotator: RefreshTokenRotator
    user_service: UserService
    provider: FakeProvider
    linker: OAuthLinker


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(jwt_secret=ACCESS_SECRET, jwt_refresh_secret=REFRESH_SECRET, hash_secret="pepper")


def make_services(config: AuthConfig, seed_roles: bool = True) -> Services:
    engine = create_auth_engine("sqlite:///:memory:")
    users = UserStore(engine)
    roles = RoleStore(engine)
    if seed_roles:
        roles.seed_defaults()
    refresh_tokens = RefreshTokenStore(engine)
    resets = PasswordResetStore(engine)
    hasher = PasswordHasher(config.hash_secret)
    tokens = TokenService(config)
    rotator = RefreshTokenRotator(tokens, refresh_tokens, users, config)
    provider = FakeProvider()
    return Services(
        engine=engine,
        config=config,
        users=users,
        roles=roles,
        refresh_tokens=refresh_tokens,
        resets=resets,
        hasher=hasher,
        tokens=tokens,
        rotator=rotator,
        user_service=UserService(users, roles, resets, hasher, tokens, rotator, config),
        provider=provider,
        linker=OAuthLinker(provider, users, roles, tokens, rotator),
    )


@pytest.fixture
def services(auth_config: AuthConfig) -> Services:
    return make_services(auth_config)


@pytest.fixture
def unseeded_services(auth_config: AuthConfig) -> Services:
    """Services over a database with no roles at all (no default role)."""
    return make_services(auth_config, seed_roles=False)


def _rows_for_user(engine: Engine, table_name: str, user_id: int) -> list:
    table = metadata.tables[table_name]
    with engine.connect() as conn:
        return conn.execute(table.select().where(table.c.user_id == user_id).order_by(table.c.id)).fetchall()


@pytest.fixture
def refresh_rows(services: Services):
    """refresh_rows(user_id) -> raw refresh_tokens rows for the user, oldest first."""
    return lambda user_id: _rows_for_user(services.engine, "refresh_tokens", user_id)


@pytest.fixture
def reset_rows(services: Services):
    """reset_rows(user_id) -> raw password_reset_tokens rows for the user, oldest first."""
    return lambda user_id: _rows_for_user(services.engine, "password_reset_tokens", user_id)


# ---------------------------------------------------------------------------
# Route-level fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    admin_token: str
    admin_id: int
    provider: FakeProvider


def _patch_lifespan(settings: Settings, provider: FakeProvider):
    """Return an async context manager that replaces the real lifespan.

    Builds the real object graph against an isolated database and the fake
    OAuth provider, so routes are exercised end to end without the network.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, settings, oauth_provider=provider)
        yield
        app.state.engine.dispose()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext with an admin holding the users.manage_claims claim.

    follow_redirects=False so OAuth tests can assert on redirect locations.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    settings = Settings(
        debug=True,
        database_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true",
        jwt_secret=ACCESS_SECRET,
        jwt_refresh_secret=REFRESH_SECRET,
        frontend_url="http://frontend.test",
    )
    provider = FakeProvider()
    app.router.lifespan_context = _patch_lifespan(settings, provider)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        service: UserService = app.state.user_service
        admin = service.register("siteadmin", ADMIN_EMAIL, ADMIN_PASSWORD)
        claim = RoleStore(app.state.engine).get_claim_by_name(MANAGE_CLAIMS)
        service.set_claims(admin.id, [claim.id])
        token = service.login(ADMIN_EMAIL, ADMIN_PASSWORD).access_token
        yield ApiContext(client=client, admin_token=token, admin_id=admin.id, provider=provider)
