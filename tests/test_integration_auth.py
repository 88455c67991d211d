"""Integration tests for the authentication flow.

Covers:
- Registration and login with password
- One-time code verification, resend and lockout
- Password reset
- Token refresh and logout
- The refreshing API client talking to the real app
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from stepauth import app as app_module
from stepauth.client.secure_store import MemorySecureStore
from stepauth.client.session import AuthClient
from stepauth.config import ClientSettings
from stepauth.service.errors import AuthLostError, InvalidCodeError
from stepauth.service.runtime import get_runtime
from stepauth.storage.models import TokenPair


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


def _last_code(email):
    return get_runtime().notifier.last_code_for(email)


def _register_and_login(client, email, password):
    client.post("/v1/auth/register", json={"email": email, "password": password})
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["data"]


def _authenticated(client, email, password):
    challenge = _register_and_login(client, email, password)
    response = client.post(
        "/v1/auth/otp/verify",
        json={"user_id": challenge["user_id"], "code": _last_code(email)},
    )
    assert response.status_code == 200
    return response.json()["data"]


class TestRegistration:
    def test_register_creates_unverified_user(self, client, test_user_email, test_user_password):
        response = client.post(
            "/v1/auth/register",
            json={"email": test_user_email, "password": test_user_password},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == test_user_email
        assert body["data"]["is_verified"] is False

    def test_register_rejects_duplicate(self, client, test_user_email, test_user_password):
        payload = {"email": test_user_email, "password": test_user_password}
        client.post("/v1/auth/register", json=payload)
        response = client.post("/v1/auth/register", json=payload)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_rejects_weak_password(self, client, test_user_email):
        response = client.post(
            "/v1/auth/register", json={"email": test_user_email, "password": "short"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginAndVerification:
    def test_login_sends_code_and_verify_returns_tokens(
        self, client, test_user_email, test_user_password
    ):
        challenge = _register_and_login(client, test_user_email, test_user_password)
        assert challenge["challenge_id"]
        assert challenge["expires_at"]
        code = _last_code(test_user_email)
        assert code and len(code) == 6

        response = client.post(
            "/v1/auth/otp/verify", json={"user_id": challenge["user_id"], "code": code}
        )
        assert response.status_code == 200
        tokens = response.json()["data"]
        assert tokens["token_type"] == "bearer"
        assert response.headers["Cache-Control"] == "no-store"

        me = client.get("/v1/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["email"] == test_user_email
        assert me.json()["data"]["is_verified"] is True

    def test_wrong_password(self, client, test_user_email, test_user_password):
        client.post(
            "/v1/auth/register",
            json={"email": test_user_email, "password": test_user_password},
        )
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "WrongPassword1!"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_code_is_single_use(self, client, test_user_email, test_user_password):
        challenge = _register_and_login(client, test_user_email, test_user_password)
        payload = {"user_id": challenge["user_id"], "code": _last_code(test_user_email)}
        assert client.post("/v1/auth/otp/verify", json=payload).status_code == 200

        again = client.post("/v1/auth/otp/verify", json=payload)
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "otp_not_found"

    def test_lockout_after_three_wrong_codes(self, client, test_user_email, test_user_password):
        challenge = _register_and_login(client, test_user_email, test_user_password)
        code = _last_code(test_user_email)
        wrong = "000000" if code != "000000" else "111111"

        remaining = []
        for _ in range(3):
            response = client.post(
                "/v1/auth/otp/verify", json={"user_id": challenge["user_id"], "code": wrong}
            )
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "otp_invalid"
            remaining.append(response.json()["error"]["details"]["attempts_remaining"])
        assert remaining == [2, 1, 0]

        response = client.post(
            "/v1/auth/otp/verify", json={"user_id": challenge["user_id"], "code": code}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "otp_attempts_exceeded"

    def test_malformed_code_is_validation_error(
        self, client, test_user_email, test_user_password
    ):
        challenge = _register_and_login(client, test_user_email, test_user_password)
        response = client.post(
            "/v1/auth/otp/verify", json={"user_id": challenge["user_id"], "code": "12ab56"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_resend_replaces_code(self, client, test_user_email, test_user_password):
        challenge = _register_and_login(client, test_user_email, test_user_password)
        first = _last_code(test_user_email)
        response = client.post("/v1/auth/otp/resend", json={"email": test_user_email})
        assert response.status_code == 200
        second = _last_code(test_user_email)
        active = get_runtime().store.list_challenges(challenge["user_id"])
        assert sum(1 for c in active if not c.consumed) == 1

        response = client.post(
            "/v1/auth/otp/verify", json={"user_id": challenge["user_id"], "code": second}
        )
        assert response.status_code == 200
        assert first is not None

    def test_resend_for_unknown_email_looks_the_same(self, client):
        response = client.post("/v1/auth/otp/resend", json={"email": "ghost@example.com"})
        assert response.status_code == 200
        assert "if the account exists" in response.json()["data"]["message"]


class TestPasswordReset:
    def test_reset_flow(self, client, test_user_email, test_user_password):
        tokens = _authenticated(client, test_user_email, test_user_password)

        response = client.post("/v1/auth/password/forgot", json={"email": test_user_email})
        assert response.status_code == 200
        code = _last_code(test_user_email)

        response = client.post(
            "/v1/auth/password/reset",
            json={"email": test_user_email, "code": code, "new_password": "BrandNewPass456!"},
        )
        assert response.status_code == 200

        old = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": test_user_password}
        )
        assert old.status_code == 401
        new = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "BrandNewPass456!"}
        )
        assert new.status_code == 200

        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401
        assert refresh.json()["error"]["details"]["reason"] == "REVOKED"


class TestTokens:
    def test_refresh_rotates_pair(self, client, test_user_email, test_user_password):
        tokens = _authenticated(client, test_user_email, test_user_password)
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != tokens["refresh_token"]

        stale = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert stale.status_code == 401
        assert stale.json()["error"]["details"]["reason"] == "REVOKED"

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert response.status_code == 401
        assert response.json()["error"]["details"]["reason"] == "INVALID"

    def test_logout_revokes_both_tokens(self, client, test_user_email, test_user_password):
        tokens = _authenticated(client, test_user_email, test_user_password)
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200

        assert client.get("/v1/me", headers=headers).status_code == 401
        refresh = client.post(
            "/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert refresh.status_code == 401

    def test_me_requires_bearer(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestHealth:
    def test_healthz_with_memory_store(self, client):
        response = client.get("/v1/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"


def _api_client(store=None):
    return AuthClient.from_settings(
        ClientSettings(api_base_url="http://testserver", refresh_backoff_seconds=0),
        store=store or MemorySecureStore(),
        transport=httpx.ASGITransport(app=app_module.app),
    )


class TestAuthClient:
    async def test_full_session_with_refresh(self, test_user_email, test_user_password):
        async with _api_client() as api:
            await api.register(test_user_email, test_user_password)
            challenge = await api.login(test_user_email, test_user_password)
            pair = await api.verify_otp(challenge["user_id"], _last_code(test_user_email))
            assert api.is_authenticated

            me = await api.me()
            assert me["email"] == test_user_email

            # Simulate an access token the server no longer accepts
            api.store.save(
                TokenPair(
                    access_token="stale-access-token",
                    refresh_token=pair.refresh_token,
                    subject_id=pair.subject_id,
                )
            )
            me = await api.me()
            assert me["id"] == pair.subject_id
            refreshed = api.store.load()
            assert refreshed.refresh_token != pair.refresh_token
            assert refreshed.access_expires_at is not None

            await api.logout()
            assert not api.is_authenticated

    async def test_revoked_refresh_token_loses_auth(self, test_user_email, test_user_password):
        lost = []
        async with _api_client() as api:
            api.coordinator.add_auth_lost_listener(lost.append)
            await api.register(test_user_email, test_user_password)
            challenge = await api.login(test_user_email, test_user_password)
            pair = await api.verify_otp(challenge["user_id"], _last_code(test_user_email))

            get_runtime().tokens.revoke(pair.subject_id)
            api.store.save(
                TokenPair(
                    access_token="stale-access-token",
                    refresh_token=pair.refresh_token,
                    subject_id=pair.subject_id,
                )
            )
            with pytest.raises(AuthLostError):
                await api.me()
            assert api.store.load() is None
            assert len(lost) == 1

    async def test_wrong_code_surfaces_typed_error(self, test_user_email, test_user_password):
        async with _api_client() as api:
            await api.register(test_user_email, test_user_password)
            challenge = await api.login(test_user_email, test_user_password)
            code = _last_code(test_user_email)
            wrong = "000000" if code != "000000" else "111111"
            with pytest.raises(InvalidCodeError) as excinfo:
                await api.verify_otp(challenge["user_id"], wrong)
            assert excinfo.value.detail["attempts_remaining"] == 2
            assert not api.is_authenticated
