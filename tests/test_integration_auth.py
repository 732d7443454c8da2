"""Integration tests for the authentication flow over HTTP.

Tests the complete auth flow including:
- Registration and validation errors
- Password login
- Google sign-in and account linking
- /me, refresh and logout
- Token failures mapped to 401 with machine codes
"""

import time

import pytest
from fastapi.testclient import TestClient

from taskdeck import app as app_module
from taskdeck.service.runtime import get_runtime
from taskdeck.service.tokens import TokenService

ANA = {
    "name": "Ana",
    "email": "ana@x.com",
    "password": "Secret1",
    "password_confirmation": "Secret1",
}


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, **overrides):
    return client.post("/register", json={**ANA, **overrides})


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_scenario_a_register_ana(self, client):
        response = _register(client)

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "User successfully registered"
        assert data["user"]["email"] == "ana@x.com"
        assert data["user"]["auth_provider"] == "local"
        assert data["user"]["google_id"] is None
        assert "password" not in data["user"]
        assert "password_hash" not in data["user"]
        assert isinstance(data["token"], str) and data["token"].count(".") == 2

    def test_duplicate_email_rejected(self, client):
        _register(client)
        response = _register(client, name="Other")

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert "email" in body["details"]

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"password": "abc", "password_confirmation": "abc"}, "password"),
            ({"email": "not-an-email"}, "email"),
            ({"name": ""}, "name"),
            ({"name": "x" * 256}, "name"),
        ],
    )
    def test_invalid_input_rejected_before_any_write(self, client, overrides, field):
        response = _register(client, **overrides)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert field in body["details"]
        assert get_runtime().store.list_users() == []

    def test_confirmation_mismatch_rejected(self, client):
        response = _register(client, password_confirmation="Secret2")

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"
        assert get_runtime().store.list_users() == []

    def test_missing_fields_rejected(self, client):
        response = client.post("/register", json={"email": "ana@x.com"})
        assert response.status_code == 400


class TestLogin:
    def test_login_returns_bearer_token(self, client):
        _register(client)
        response = client.post("/login", json={"email": "ana@x.com", "password": "Secret1"})

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 60 * 60
        me = client.post("/me", headers=_auth(data["access_token"]))
        assert me.json()["email"] == "ana@x.com"

    def test_scenario_b_wrong_password(self, client):
        _register(client)
        response = client.post("/login", json={"email": "ana@x.com", "password": "wrong"})

        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"

    def test_unknown_email_indistinguishable(self, client):
        _register(client)
        wrong_password = client.post("/login", json={"email": "ana@x.com", "password": "nope"})
        unknown = client.post("/login", json={"email": "who@x.com", "password": "Secret1"})
        malformed = client.post("/login", json={"email": "garbage", "password": "Secret1"})

        for response in (wrong_password, unknown, malformed):
            assert response.status_code == 401
            assert response.json()["error"] == "Unauthorized"
            assert response.json()["code"] == "invalid_credentials"


class TestGoogleLogin:
    def test_scenario_c_links_existing_account(self, client, google_keys):
        registered = _register(client).json()["user"]

        response = client.post("/login-google", json={"google_token": google_keys.mint()})

        assert response.status_code == 200
        data = response.json()
        assert data["user"]["id"] == registered["id"]
        assert data["user"]["google_id"] == "g-123"
        assert data["user"]["auth_provider"] == "google"
        assert data["user"]["name"] == "Ana"
        assert data["user"]["email_verified_at"] is not None
        assert data["token"]

    def test_new_identity_creates_account(self, client, google_keys):
        response = client.post(
            "/login-google",
            json={"google_token": google_keys.mint(sub="g-777", email="new@x.com", name="Newbie")},
        )

        assert response.status_code == 200
        user = response.json()["user"]
        assert user["name"] == "Newbie"
        assert user["auth_provider"] == "google"
        # the generated password is not a usable credential
        login = client.post("/login", json={"email": "new@x.com", "password": ""})
        assert login.status_code == 401

    def test_google_token_logs_in_to_me(self, client, google_keys):
        token = client.post(
            "/login-google", json={"google_token": google_keys.mint()}
        ).json()["token"]
        me = client.post("/me", headers=_auth(token))
        assert me.status_code == 200
        assert me.json()["google_id"] == "g-123"

    @pytest.mark.parametrize("body", [{}, {"google_token": ""}, {"google_token": "   "}])
    def test_missing_token_is_400(self, client, body):
        response = client.post("/login-google", json=body)

        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    @pytest.mark.parametrize("bad", ["garbage", "a.b.c", "x.y"])
    def test_malformed_token_is_401(self, client, google_keys, bad):
        response = client.post("/login-google", json={"google_token": bad})

        assert response.status_code == 401
        assert response.json()["code"] == "malformed_assertion"

    def test_wrong_audience_is_401(self, client, google_keys):
        response = client.post(
            "/login-google", json={"google_token": google_keys.mint(aud="other-app")}
        )
        assert response.status_code == 401
        assert get_runtime().store.list_users() == []

    def test_key_fetch_failure_is_500(self, client, google_signer):
        from taskdeck.service.errors import UpstreamFailure

        async def failing_fetch(url):
            raise UpstreamFailure("unable to fetch identity provider keys")

        get_runtime().identity._jwks_fetcher = failing_fetch
        response = client.post("/login-google", json={"google_token": google_signer.mint()})

        assert response.status_code == 500
        assert response.json()["code"] == "upstream_failure"

    def test_unexpected_failure_is_500(self, client, google_keys, monkeypatch):
        def explode(claims, provider="google"):
            raise KeyError("surprise")

        monkeypatch.setattr(get_runtime().auth, "reconcile_identity", explode)
        response = client.post("/login-google", json={"google_token": google_keys.mint()})

        assert response.status_code == 500
        assert response.json()["code"] == "upstream_failure"


class TestSessionEndpoints:
    def test_me_accepts_get_and_post(self, client):
        token = _register(client).json()["token"]
        assert client.get("/me", headers=_auth(token)).status_code == 200
        assert client.post("/me", headers=_auth(token)).json()["name"] == "Ana"

    def test_me_without_token(self, client):
        response = client.post("/me")

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"

    def test_scenario_d_expired_token(self, client):
        user_id = _register(client).json()["user"]["id"]
        runtime = get_runtime()
        two_hours_ago = time.time() - 2 * 60 * 60
        stale = TokenService(runtime.settings, runtime.store, clock=lambda: two_hours_ago)
        expired = stale.issue(runtime.store.get_user(user_id)).access_token

        response = client.post("/me", headers=_auth(expired))

        assert response.status_code == 401
        assert response.json()["code"] == "token_expired"

    def test_garbage_token(self, client):
        response = client.post("/me", headers=_auth("not.a.token"))

        assert response.status_code == 401
        assert response.json()["code"] == "token_malformed"

    def test_non_ascii_signature_is_malformed(self, client):
        header, payload, _ = _register(client).json()["token"].split(".")
        raw = f"Bearer {header}.{payload}.".encode() + b"\xe9\xe9\xe9"

        response = client.get("/me", headers={"Authorization": raw})

        assert response.status_code == 401
        assert response.json()["code"] == "token_malformed"

    def test_token_for_deleted_user(self, client):
        data = _register(client).json()
        get_runtime().store.users.pop(data["user"]["id"])

        response = client.post("/me", headers=_auth(data["token"]))

        assert response.status_code == 401
        assert response.json()["code"] == "user_not_found"

    def test_logout_revokes_token(self, client):
        token = _register(client).json()["token"]

        response = client.post("/logout", headers=_auth(token))

        assert response.status_code == 200
        assert response.json() == {"message": "Successfully logged out"}
        assert client.post("/me", headers=_auth(token)).status_code == 401

    def test_refresh_rotates_token(self, client):
        token = _register(client).json()["token"]

        response = client.post("/refresh", headers=_auth(token))

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["access_token"] != token
        assert client.post("/me", headers=_auth(data["access_token"])).status_code == 200
        assert client.post("/me", headers=_auth(token)).status_code == 401

    def test_update_profile(self, client):
        token = _register(client).json()["token"]

        response = client.put(
            "/profile",
            headers=_auth(token),
            json={"name": "Ana Maria", "profile_image_url": "https://img.example.com/a.png"},
        )

        assert response.status_code == 200
        assert response.json()["user"]["name"] == "Ana Maria"
        assert client.post("/me", headers=_auth(token)).json()["profile_image_url"] == (
            "https://img.example.com/a.png"
        )

    def test_update_profile_duplicate_email(self, client):
        _register(client)
        bob_token = _register(client, name="Bob", email="bob@x.com").json()["token"]

        response = client.put("/profile", headers=_auth(bob_token), json={"email": "ana@x.com"})

        assert response.status_code == 400
        assert "email" in response.json()["details"]

    def test_request_id_echoed_in_errors(self, client):
        response = client.post("/me", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.json()["request_id"] == "req-42"
