"""
auth/oauth.py -- Google OAuth provider and local-account linking.

GoogleProvider wraps authlib's requests-based OAuth2Session for the
authorization-code flow and fetches the userinfo profile with requests.
Every provider failure (code exchange, transport, non-200, unparseable body)
surfaces as AuthError(UPSTREAM_FAILURE); the provider's own error text is
logged, never returned.

OAuthLinker turns a callback code into a local session:
  1. exchange the code for a provider access token
  2. fetch the profile
  3. find a local user by external_id OR email (first match wins)
  4a. none: create one on the default role, username = email local-part,
      probing "name1", "name2", ... until free
  4b. found without external_id: backfill external_id/profile_image/provider
  5. issue an access token and open a remembered refresh-token session

Security notes:
  Step 4b links by email with no confirmation step. That is the historical
  behavior and is kept; when the provider says the email is NOT verified the
  link still happens but a warning is logged, because an unverified address
  could belong to someone else.

  The OAuth state value (CSRF protection) is generated and checked by the
  HTTP layer, which stores it in a short-lived httpOnly cookie.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session
from sqlalchemy.exc import SQLAlchemyError

from auth import errors
from auth.errors import AuthError, ErrorKind, store_errors
from auth.models import GOOGLE_PROVIDER, OAuthProfile, OAuthResult, User
from auth.service import insert_account, mask_email
from auth.sessions import RefreshTokenRotator
from auth.store import RoleRepository, UserRepository
from auth.tokens import TokenService
from core.config import Settings

logger = logging.getLogger("knowstack.auth.oauth")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)

# Module-level session shared across profile fetches for connection pooling.
# Three redirects is generous for a single well-known endpoint.
_session = requests.Session()
_session.max_redirects = 3


class OAuthProvider(Protocol):
    name: str

    def authorization_url(self, state: str) -> str: ...
    def exchange_code(self, code: str) -> str: ...
    def fetch_profile(self, access_token: str) -> OAuthProfile: ...


class GoogleProvider:
    """Google authorization-code flow.

    Usage:
        provider = GoogleProvider.from_settings(get_settings())
        url = provider.authorization_url(state)
        access_token = provider.exchange_code(code)
        profile = provider.fetch_profile(access_token)
    """

    name = GOOGLE_PROVIDER

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http: requests.Session | None = None,
        timeout: float = 10,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._http = http or _session
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> GoogleProvider:
        return cls(settings.google_client_id, settings.google_client_secret, settings.google_redirect_url)

    def _client(self) -> OAuth2Session:
        return OAuth2Session(
            self._client_id,
            self._client_secret,
            scope=" ".join(GOOGLE_SCOPES),
            redirect_uri=self._redirect_uri,
        )

    def authorization_url(self, state: str) -> str:
        with self._client() as client:
            url, _state = client.create_authorization_url(GOOGLE_AUTHORIZE_URL, state=state)
        return url

    def exchange_code(self, code: str) -> str:
        try:
            with self._client() as client:
                token = client.fetch_token(GOOGLE_TOKEN_URL, code=code, timeout=self._timeout)
        except (AuthlibBaseError, requests.RequestException) as exc:
            logger.warning("Google code exchange failed: %s", exc)
            raise AuthError(ErrorKind.UPSTREAM_FAILURE) from exc
        access_token = token.get("access_token")
        if not access_token:
            logger.warning("Google code exchange returned no access_token")
            raise AuthError(ErrorKind.UPSTREAM_FAILURE)
        return access_token

    def fetch_profile(self, access_token: str) -> OAuthProfile:
        try:
            resp = self._http.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Google userinfo request failed: %s", exc)
            raise AuthError(ErrorKind.UPSTREAM_FAILURE) from exc

        if resp.status_code != 200:
            logger.warning("Google userinfo returned status %d", resp.status_code)
            raise AuthError(ErrorKind.UPSTREAM_FAILURE)
        try:
            body = resp.json()
        except ValueError as exc:
            logger.warning("Google userinfo body is not JSON")
            raise AuthError(ErrorKind.UPSTREAM_FAILURE) from exc
        return parse_google_profile(body)


def parse_google_profile(body: object) -> OAuthProfile:
    """Normalize a Google userinfo v2 body. Raises UPSTREAM_FAILURE if unusable."""
    if not isinstance(body, dict) or not body.get("id") or not body.get("email"):
        logger.warning("Google userinfo is missing id or email")
        raise AuthError(ErrorKind.UPSTREAM_FAILURE)
    return OAuthProfile(
        external_id=str(body["id"]),
        email=str(body["email"]),
        verified_email=bool(body.get("verified_email", False)),
        name=str(body.get("name") or ""),
        picture=str(body.get("picture") or ""),
        locale=str(body.get("locale") or ""),
    )


def username_from_email(email: str) -> str:
    return email.split("@", 1)[0]


class OAuthLinker:
    def __init__(
        self,
        provider: OAuthProvider,
        users: UserRepository,
        roles: RoleRepository,
        tokens: TokenService,
        rotator: RefreshTokenRotator,
    ) -> None:
        self._provider = provider
        self._users = users
        self._roles = roles
        self._tokens = tokens
        self._rotator = rotator

    def authorization_url(self, state: str) -> str:
        return self._provider.authorization_url(state)

    def handle_callback(self, code: str) -> OAuthResult:
        """Exchange code, find-or-create the local account, open a session.

        Raises:
            AuthError: UPSTREAM_FAILURE from the provider, NOT_FOUND(default_role)
                or ALREADY_EXISTS when creating the account, INTERNAL on store
                failures.
        """
        provider_token = self._provider.exchange_code(code)
        profile = self._provider.fetch_profile(provider_token)

        with store_errors("look up an OAuth account"):
            user = self._users.get_by_external_id_or_email(profile.external_id, profile.email)

        is_new_user = False
        if user is None:
            user = self._create_user(profile)
            is_new_user = True
        elif not user.external_id:
            self._backfill(user, profile)

        access_token = self._tokens.issue_access_for(user)
        refresh_token = self._rotator.open_session(user.id, remember=True)
        logger.info("OAuth login for user %d via %s (new=%s)", user.id, self._provider.name, is_new_user)
        return OAuthResult(access_token=access_token, refresh_token=refresh_token, is_new_user=is_new_user)

    def unique_username(self, email: str) -> str:
        """Email local-part, suffixed 1, 2, ... until no account uses it."""
        base = username_from_email(email)
        candidate = base
        counter = 1
        with store_errors("probe for a free username"):
            while self._users.username_exists(candidate):
                candidate = f"{base}{counter}"
                counter += 1
        return candidate

    def _create_user(self, profile: OAuthProfile) -> User:
        with store_errors("find the default role"):
            default_role = self._roles.get_default_role()
        if default_role is None:
            logger.error("No default role configured; cannot create OAuth account")
            raise AuthError(ErrorKind.NOT_FOUND, errors.DEFAULT_ROLE)

        user_id = insert_account(
            self._users,
            User(
                username=self.unique_username(profile.email),
                email=profile.email,
                role_id=default_role.id,
                password_hash="",
                provider=self._provider.name,
                external_id=profile.external_id,
                profile_image=profile.picture,
            ),
        )
        logger.info("Created OAuth account %d for %s", user_id, mask_email(profile.email))
        with store_errors("load the new OAuth account"):
            created = self._users.get_by_id(user_id)
        if created is None:
            raise AuthError(ErrorKind.INTERNAL)
        return created

    def _backfill(self, user: User, profile: OAuthProfile) -> None:
        """Link the external identity onto an existing account. Failure is non-fatal."""
        if not profile.verified_email:
            logger.warning(
                "Linking %s identity to user %d by an email the provider has not verified",
                self._provider.name,
                user.id,
            )
        try:
            self._users.link_external(user.id, self._provider.name, profile.external_id, profile.picture)
        except SQLAlchemyError:
            logger.exception("Failed to link %s identity to user %d", self._provider.name, user.id)
            return
        logger.info("Linked %s identity to existing user %d", self._provider.name, user.id)
