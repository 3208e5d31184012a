"""Tests for error envelopes, response headers and role checks."""

from unittest.mock import AsyncMock

from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from authgate.api.error_handling import register_exception_handlers
from authgate.api.routes import require_role
from authgate.service.email import DeliveryError
from authgate.service.otp import OtpChannel
from authgate.storage.models import Principal


class TestEnvelope:
    def test_validation_error_shape(self, client):
        resp = client.post("/auth/login", json={"identifier": "a@example.com"})

        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["code"] == "BadRequest"
        assert body["error"]["message"] == "Invalid request body."
        assert isinstance(body["error"]["details"], list)
        assert body["requestId"]

    def test_request_id_is_echoed(self, client):
        resp = client.post(
            "/auth/login",
            json={"identifier": "a@example.com"},
            headers={"X-Request-ID": "req-123"},
        )

        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["requestId"] == "req-123"

    def test_unknown_route(self, client):
        resp = client.get("/auth/does-not-exist")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NotFound"

    def test_method_not_allowed(self, client):
        resp = client.get("/auth/login")

        assert resp.status_code == 405
        assert resp.json()["error"]["code"] == "BadRequest"

    def test_delivery_failure(self, client, runtime):
        runtime.otp.senders[OtpChannel.SMS].send_otp.side_effect = DeliveryError(
            "Unable to send verification SMS."
        )

        resp = client.post(
            "/auth/otp/request", json={"channel": "sms", "identifier": "+15550001111"}
        )

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "DeliveryFailed"

    def test_unhandled_error_hides_details(self, runtime):
        from authgate.app import app

        runtime.sessions.list = AsyncMock(side_effect=RuntimeError("db exploded: secret"))
        token = runtime.codec.sign_access("user-1", ["user"])
        client = TestClient(app, raise_server_exceptions=False)

        resp = client.get("/auth/sessions", headers={"Authorization": f"Bearer {token}"})

        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "ServerError",
            "message": "Internal server error.",
            "details": None,
        }
        assert "secret" not in resp.text


class TestHeaders:
    def test_auth_responses_are_not_cached(self, client):
        resp = client.post(
            "/auth/otp/request", json={"channel": "email", "identifier": "a@example.com"}
        )

        assert resp.headers["Cache-Control"] == "no-store"
        assert "Cookie" in resp.headers["Vary"]
        assert resp.headers["X-Content-Type-Options"] == "nosniff"

    def test_error_responses_are_not_cached(self, client):
        resp = client.get("/auth/me")

        assert resp.status_code == 401
        assert resp.headers["Cache-Control"] == "no-store"

    def test_cors_preflight(self, client):
        resp = client.options(
            "/auth/refresh",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert resp.headers["access-control-allow-credentials"] == "true"


class TestRoleDependency:
    """``require_role`` gates on the access token's role set."""

    def _app(self):
        app = FastAPI()
        register_exception_handlers(app)

        @app.get("/admin-only")
        async def admin_only(principal: Principal = Depends(require_role("admin"))):
            return {"userId": principal.user_id}

        return app

    def test_role_present(self, runtime):
        token = runtime.codec.sign_access("user-1", ["user", "admin"])

        resp = TestClient(self._app()).get(
            "/admin-only", headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status_code == 200
        assert resp.json() == {"userId": "user-1"}

    def test_role_missing(self, runtime):
        token = runtime.codec.sign_access("user-1", ["user"])

        resp = TestClient(self._app()).get(
            "/admin-only", headers={"Authorization": f"Bearer {token}"}
        )

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "Forbidden"
        assert resp.json()["error"]["details"] == {"required_role": "admin"}

    def test_no_token(self, runtime):
        resp = TestClient(self._app()).get("/admin-only")

        assert resp.status_code == 401
