"""HTTP surface tests.

Covers the envelope format, status codes for each failure class, and the
full signup, refresh, logout cycle against the in-memory runtime.
"""

import pytest
from fastapi.testclient import TestClient

from authkernel import app as app_module
from authkernel.service.errors import InternalFailureError, ResourceUnavailableError
from authkernel.service.runtime import get_runtime

EMAIL = "apiuser@example.com"
PASSWORD = "ApiPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _signup(client, email=EMAIL, password=PASSWORD):
    response = client.post("/v1/auth/signup", json={"email": email, "password": password})
    assert response.status_code == 201
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestDiscovery:
    def test_jwks_lists_signing_key(self, client):
        response = client.get("/.well-known/jwks.json")

        assert response.status_code == 200
        keys = response.json()["keys"]
        assert keys[0]["kid"] == get_runtime().keys.kid
        assert keys[0]["alg"] == "RS256"
        assert "d" not in keys[0]

    def test_health(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["store"] == "MemoryStore"


class TestAuthFlow:
    def test_signup_returns_token_triple(self, client):
        data = _signup(client)
        assert data["token_type"] == "bearer"
        assert data["access_token"] and data["refresh_token"] and data["id_token"]
        assert data["role"] == "member"

    def test_duplicate_signup_conflicts(self, client):
        _signup(client)
        response = client.post("/v1/auth/signup", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_login_and_me(self, client):
        signup = _signup(client)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 200
        login = response.json()["data"]
        assert login["session_id"] != signup["session_id"]

        me = client.get("/v1/auth/me", headers=_bearer(login["access_token"]))

        assert me.status_code == 200
        assert me.json()["data"] == {
            "user_id": signup["user_id"],
            "session_id": login["session_id"],
            "email": EMAIL,
            "role": "member",
        }

    def test_bad_password_is_401(self, client):
        _signup(client)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": "wrong-password"})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_refresh_rotates(self, client):
        signup = _signup(client)

        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": signup["refresh_token"]}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["session_id"] == signup["session_id"]
        assert data["refresh_token"] != signup["refresh_token"]
        assert data["id_token"] is None

    def test_reused_refresh_token_revokes_everything(self, client):
        signup = _signup(client)
        other = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD}).json()["data"]
        client.post("/v1/auth/refresh", json={"refresh_token": signup["refresh_token"]})

        replay = client.post("/v1/auth/refresh", json={"refresh_token": signup["refresh_token"]})

        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_reuse_detected"
        me = client.get("/v1/auth/me", headers=_bearer(other["access_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "invalid_session"

    def test_logout_invalidates_access_token(self, client):
        signup = _signup(client)
        headers = _bearer(signup["access_token"])
        assert client.get("/v1/auth/me", headers=headers).status_code == 200

        response = client.post("/v1/auth/logout", headers=headers)
        assert response.json()["data"] == {"revoked": True}

        after = client.get("/v1/auth/me", headers=headers)
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "invalid_session"

    def test_logout_all_can_keep_current(self, client):
        signup = _signup(client)
        client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})

        response = client.post(
            "/v1/auth/logout-all",
            json={"keep_current": True},
            headers=_bearer(signup["access_token"]),
        )

        assert response.json()["data"] == {"revoked": 2}
        assert client.get("/v1/auth/me", headers=_bearer(signup["access_token"])).status_code == 200

    def test_refresh_token_rejected_as_bearer(self, client):
        signup = _signup(client)
        response = client.get("/v1/auth/me", headers=_bearer(signup["refresh_token"]))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"
        assert response.json()["error"]["details"] == {"reason": "wrong_kind"}

    def test_missing_bearer(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"


class TestPasswordEndpoints:
    def test_reset_request_never_reveals_account(self, client):
        _signup(client)
        known = client.post("/v1/auth/reset/request", json={"email": EMAIL})
        unknown = client.post("/v1/auth/reset/request", json={"email": "ghost@example.com"})
        assert known.json()["data"] == unknown.json()["data"] == {"status": "sent"}

    def test_reset_confirm_with_bad_token(self, client):
        response = client.post(
            "/v1/auth/reset/confirm",
            json={"token": "not-a-real-token", "new_password": "AnotherPassword1"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_change_password_keeps_current_session(self, client):
        signup = _signup(client)
        headers = _bearer(signup["access_token"])

        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "AnotherPassword1"},
            headers=headers,
        )

        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=headers).status_code == 200
        relogin = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert relogin.status_code == 401


class TestEnvelope:
    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-456"})
        body = response.json()
        assert body["status"] == "error"
        assert body["request_id"] == "req-456"

    def test_validation_error_is_400(self, client):
        response = client.post("/v1/auth/signup", json={"email": "not-an-email", "password": PASSWORD})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_security_headers(self, client):
        response = client.get("/v1/auth/me")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_server_error_message_not_exposed(self, client, monkeypatch):
        async def failing_login(*args, **kwargs):
            raise InternalFailureError(
                "unable to persist signing key; set JWT_PRIVATE_KEY_PATH or make KEYS_DIR writable"
            )

        monkeypatch.setattr(get_runtime().sessions, "login", failing_login)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "server_error"
        assert error["message"] == "internal server error"
        assert "JWT_PRIVATE_KEY_PATH" not in response.text

    def test_unavailable_store_reports_generic_503(self, client, monkeypatch):
        async def failing_login(*args, **kwargs):
            raise ResourceUnavailableError("database unavailable")

        monkeypatch.setattr(get_runtime().sessions, "login", failing_login)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})

        assert response.status_code == 503
        assert response.json()["error"]["message"] == "service temporarily unavailable"
