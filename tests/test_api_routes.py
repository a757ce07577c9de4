"""
tests/test_api_routes.py -- Integration tests for the users and OAuth routes.

These tests exercise the full stack: FastAPI routing -> request validation ->
bearer dependency -> UserService/OAuthLinker -> SQLite -> response models and
the AuthError handler. Unit tests of the services would miss the status-code
mapping, camelCase wire names and Cache-Control headers.

Coverage:
  - register: 201, 409 on duplicates, 400 on validation failures and malformed emails
  - login / refresh / logout: tokens, no-store headers, error statuses
  - me: 401 without or with a bad bearer token, identity with a good one
  - claims: 401 unauthenticated, 403 without users.manage_claims, 200 for admin
  - password-reset: identical response for known and unknown emails
  - OAuth: login redirect + state cookie, callback state check, fragment tokens

Fixtures used (from conftest.py):
  - api_client: ApiContext(client, admin_token, admin_id, provider)
    The admin is "siteadmin" / admin@example.com and holds users.manage_claims.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest

from auth.models import OAuthProfile


def _register(client, username: str, email: str, password: str = "password123"):
    return client.post("/api/v1/users/register", json={"username": username, "email": email, "password": password})


def _login(client, email: str, password: str = "password123", remember: bool = False):
    return client.post("/api/v1/users/login", json={"email": email, "password": password, "remember": remember})


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestRegisterRoute:
    def test_register_returns_201(self, api_client) -> None:
        resp = _register(api_client.client, "reguser", "reguser@example.com")
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["username"] == "reguser"
        assert data["email"] == "reguser@example.com"
        assert isinstance(data["id"], int)
        assert "password" not in resp.text

    def test_duplicate_username_is_409(self, api_client) -> None:
        _register(api_client.client, "dupuser", "dupuser@example.com")
        resp = _register(api_client.client, "dupuser", "other-dup@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_exists.username"

    def test_duplicate_email_is_409(self, api_client) -> None:
        _register(api_client.client, "dupmail", "dupmail@example.com")
        resp = _register(api_client.client, "dupmail2", "dupmail@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_exists.email"

    def test_non_alphanumeric_username_is_400(self, api_client) -> None:
        resp = _register(api_client.client, "bad name!", "bad@example.com")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_short_password_is_400(self, api_client) -> None:
        resp = _register(api_client.client, "shortpw", "shortpw@example.com", password="short")
        assert resp.status_code == 400

    def test_bad_email_is_400(self, api_client) -> None:
        resp = _register(api_client.client, "bademail", "not-an-email")
        assert resp.status_code == 400

    @pytest.mark.parametrize("email", ["a@..com", "a@b..c", "a@-x.y", "a@b.c\u200b"])
    def test_malformed_email_domain_is_400(self, api_client, email: str) -> None:
        resp = _register(api_client.client, "malformed", email)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

        resp = _login(api_client.client, email)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestSessionRoutes:
    def test_login_returns_camel_case_tokens(self, api_client) -> None:
        _register(api_client.client, "loginuser", "loginuser@example.com")
        resp = _login(api_client.client, "loginuser@example.com")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert set(data) == {"accessToken", "refreshToken"}
        assert resp.headers["cache-control"] == "no-store"

    def test_login_unknown_email_is_404(self, api_client) -> None:
        resp = _login(api_client.client, "ghost@example.com")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found.user"

    def test_login_wrong_password_is_401(self, api_client) -> None:
        _register(api_client.client, "wrongpw", "wrongpw@example.com")
        resp = _login(api_client.client, "wrongpw@example.com", password="not-the-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credential"

    def test_refresh_returns_new_access_token(self, api_client) -> None:
        _register(api_client.client, "refresher", "refresher@example.com")
        tokens = _login(api_client.client, "refresher@example.com").json()
        resp = api_client.client.post("/api/v1/users/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert resp.status_code == 200, resp.text
        assert set(resp.json()) == {"accessToken"}
        assert resp.headers["cache-control"] == "no-store"

        me = api_client.client.get("/api/v1/users/me", headers=_bearer(resp.json()["accessToken"]))
        assert me.json()["username"] == "refresher"

    def test_refresh_with_access_token_is_401(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/users/refresh", json={"refreshToken": api_client.admin_token})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_logout_is_idempotent(self, api_client) -> None:
        _register(api_client.client, "leaver", "leaver@example.com")
        refresh_token = _login(api_client.client, "leaver@example.com").json()["refreshToken"]
        for _ in range(2):
            resp = api_client.client.post("/api/v1/users/logout", json={"refreshToken": refresh_token})
            assert resp.status_code == 200
            assert resp.json() == {"isSuccess": True}

    def test_logout_unknown_token_succeeds(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/users/logout", json={"refreshToken": "never-issued"})
        assert resp.json() == {"isSuccess": True}


class TestMeRoute:
    def test_requires_bearer(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_lowercase_prefix_rejected(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/users/me", headers={"Authorization": f"bearer {api_client.admin_token}"})
        assert resp.status_code == 401

    def test_garbage_token_rejected(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/users/me", headers=_bearer("not.a.jwt"))
        assert resp.status_code == 401

    def test_returns_identity(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/users/me", headers=_bearer(api_client.admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["userId"] == str(api_client.admin_id)
        assert data["email"] == "admin@example.com"
        assert "users.manage_claims" in data["claims"]


class TestClaimsRoute:
    def test_unauthenticated_is_401(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/users/claims", json={"user_id": 1, "claim_ids": []})
        assert resp.status_code == 401

    def test_missing_claim_is_403(self, api_client) -> None:
        _register(api_client.client, "plainuser", "plainuser@example.com")
        token = _login(api_client.client, "plainuser@example.com").json()["accessToken"]
        resp = api_client.client.post(
            "/api/v1/users/claims", json={"user_id": 1, "claim_ids": []}, headers=_bearer(token)
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_can_set_claims(self, api_client) -> None:
        target_id = _register(api_client.client, "target", "target@example.com").json()["id"]
        resp = api_client.client.post(
            "/api/v1/users/claims",
            json={"user_id": target_id, "claim_ids": [1]},
            headers=_bearer(api_client.admin_token),
        )
        assert resp.status_code == 200, resp.text

        token = _login(api_client.client, "target@example.com").json()["accessToken"]
        me = api_client.client.get("/api/v1/users/me", headers=_bearer(token)).json()
        assert me["claims"] == ["users.manage_claims"]

    def test_unknown_claim_is_404(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/users/claims",
            json={"user_id": api_client.admin_id, "claim_ids": [9999]},
            headers=_bearer(api_client.admin_token),
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found.claims"


class TestPasswordResetRoute:
    def test_same_response_for_known_and_unknown(self, api_client) -> None:
        known = api_client.client.post("/api/v1/users/password-reset", json={"email": "admin@example.com"})
        unknown = api_client.client.post("/api/v1/users/password-reset", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json() == {"isSuccess": True}


class TestOAuthRoutes:
    def test_login_redirects_with_state_cookie(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/oauth/google/login")
        assert resp.status_code == 307
        location = resp.headers["location"]
        state = parse_qs(urlsplit(location).query)["state"][0]
        assert location.startswith("https://accounts.example.test/")
        assert f"oauth_state={state}" in resp.headers["set-cookie"]
        assert "httponly" in resp.headers["set-cookie"].lower()

    def test_callback_without_state_cookie_fails(self, api_client) -> None:
        api_client.client.cookies.clear()
        resp = api_client.client.get("/api/v1/oauth/google/callback", params={"code": "c", "state": "s"})
        assert resp.status_code == 307
        assert resp.headers["location"].startswith("http://frontend.test/auth/error?")

    def test_callback_with_wrong_state_fails(self, api_client) -> None:
        api_client.client.cookies.set("oauth_state", "expected-state")
        resp = api_client.client.get("/api/v1/oauth/google/callback", params={"code": "c", "state": "other"})
        api_client.client.cookies.clear()
        assert "Invalid+state" in resp.headers["location"]

    def test_callback_creates_account_and_returns_fragment(self, api_client) -> None:
        api_client.provider.profile = OAuthProfile(external_id="g-500", email="oauthuser@example.com")
        api_client.client.cookies.set("oauth_state", "state-1")
        resp = api_client.client.get("/api/v1/oauth/google/callback", params={"code": "c1", "state": "state-1"})
        api_client.client.cookies.clear()

        assert resp.status_code == 307
        location = urlsplit(resp.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == "http://frontend.test/oauth/google/callback"
        assert location.query == ""
        fragment = parse_qs(location.fragment)
        assert fragment["isNewUser"] == ["true"]

        me = api_client.client.get("/api/v1/users/me", headers=_bearer(fragment["access_token"][0]))
        assert me.json()["username"] == "oauthuser"

        refreshed = api_client.client.post(
            "/api/v1/users/refresh", json={"refreshToken": fragment["refresh_token"][0]}
        )
        assert refreshed.status_code == 200

    def test_callback_links_existing_account(self, api_client) -> None:
        _register(api_client.client, "linkme", "linkme@example.com")
        api_client.provider.profile = OAuthProfile(external_id="g-501", email="linkme@example.com", verified_email=True)
        api_client.client.cookies.set("oauth_state", "state-2")
        resp = api_client.client.get("/api/v1/oauth/google/callback", params={"code": "c2", "state": "state-2"})
        api_client.client.cookies.clear()

        fragment = parse_qs(urlsplit(resp.headers["location"]).fragment)
        assert fragment["isNewUser"] == ["false"]

    def test_provider_failure_redirects_to_error(self, api_client) -> None:
        api_client.provider.fail = True
        api_client.client.cookies.set("oauth_state", "state-3")
        try:
            resp = api_client.client.get("/api/v1/oauth/google/callback", params={"code": "c3", "state": "state-3"})
        finally:
            api_client.provider.fail = False
            api_client.client.cookies.clear()
        assert resp.headers["location"].startswith("http://frontend.test/auth/error?")
