"""Integration tests for the HTTP auth surface.

Covers the full gate over HTTP (email registration, phone code, terms),
bearer resolution from header, query string and cookie, the duplicate
request guard and the error envelope.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from bookwave import app as app_module
from bookwave.service.runtime import get_runtime
from bookwave.storage.models import Profile

PHONE = "+15550001111"
EMAIL = "reader@example.com"
PASSWORD = "correct horse battery"


@pytest.fixture
def client():
    """Create a test client with the app lifespan running."""
    with TestClient(app_module.app) as test_client:
        yield test_client


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _complete_profile(email=EMAIL):
    runtime = get_runtime()

    async def _create():
        profile = await runtime.profiles.create(Profile.new(email))
        await runtime.passwords.save_password(profile.id, PASSWORD)
        await runtime.profiles.save_details(profile.id, phone=PHONE, accepted_terms=True)
        return profile

    return asyncio.run(_create())


def _login(client, email=EMAIL):
    response = client.post("/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["data"]["session_token"]


class TestHealth:
    def test_healthz_reports_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "ok"
        assert body["checks"]["duplicates"]["backend"] == "memory"


class TestGateOverHttp:
    def test_register_then_phone_then_terms(self, client, runtime):
        response = client.post("/v1/auth/email/request-code", json={"email": EMAIL})
        assert response.status_code == 200
        pending = response.json()["data"]["pending_token"]

        response = client.post(
            "/v1/auth/email/verify-code",
            json={"code": runtime.email_dispatcher.last_code(EMAIL)},
            headers=_auth(pending),
        )
        assert response.status_code == 200
        register_token = response.json()["data"]["register_token"]

        response = client.post(
            "/v1/auth/email/register",
            json={"register_token": register_token, "password": PASSWORD, "name": "Reader"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requires_phone"] is True
        assert data["permission"] is False
        phone_token = data["pending_token"]

        # A restricted token cannot reach protected routes
        response = client.get("/v1/auth/me", headers=_auth(phone_token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

        response = client.post(
            "/v1/auth/phone/request-code",
            json={"phone": PHONE, "machine_code": "device-1"},
            headers=_auth(phone_token),
        )
        assert response.status_code == 200
        assert response.json()["data"]["code_expires_at"]

        response = client.post(
            "/v1/auth/phone/verify-code",
            json={"code": runtime.phone_dispatcher.last_code(PHONE), "machine_code": "device-1"},
            headers=_auth(phone_token),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requires_terms_acceptance"] is True
        terms_token = data["pending_token"]

        response = client.post(
            "/v1/auth/terms/accept",
            json={"pending_token": terms_token, "language": "en-GB", "genre": "history"},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["permission"] is True
        session_token = data["session_token"]

        response = client.get("/v1/auth/me", headers=_auth(session_token))
        assert response.status_code == 200
        user = response.json()["data"]["user"]
        assert user["email"] == EMAIL
        assert user["phone"] == PHONE
        assert user["language"] == "en-GB"

    def test_passwordless_phone_login(self, client, runtime):
        response = client.post(
            "/v1/auth/phone/start",
            json={"phone": PHONE, "machine_code": "device-1", "accept_terms": True},
        )
        assert response.status_code == 200
        pending = response.json()["data"]["pending_token"]

        response = client.post(
            "/v1/auth/phone/verify-code",
            json={
                "code": runtime.phone_dispatcher.last_code(PHONE),
                "machine_code": "device-1",
                "pending_token": pending,
            },
        )
        assert response.status_code == 200
        assert response.json()["data"]["permission"] is True

    def test_wrong_code_reports_remaining_attempts(self, client, runtime):
        response = client.post("/v1/auth/email/request-code", json={"email": EMAIL})
        pending = response.json()["data"]["pending_token"]
        good = runtime.email_dispatcher.last_code()
        wrong = "0" * len(good) if good != "0" * len(good) else "1" * len(good)

        response = client.post(
            "/v1/auth/email/verify-code", json={"code": wrong, "pending_token": pending}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["attempts_remaining"] == runtime.settings.email_max_attempts - 1

    def test_repeat_code_request_is_rate_limited(self, client):
        client.post("/v1/auth/email/request-code", json={"email": EMAIL})
        response = client.post("/v1/auth/email/request-code", json={"email": EMAIL})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) > 0


class TestBearerResolution:
    def test_missing_token_is_unauthorized(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unknown_token_is_unauthorized(self, client):
        response = client.get("/v1/auth/me", headers=_auth("not-a-real-token"))
        assert response.status_code == 401

    def test_nullish_header_is_ignored(self, client):
        response = client.get("/v1/auth/me", headers={"Authorization": "Bearer undefined"})
        assert response.status_code == 401

    def test_query_string_token(self, client):
        _complete_profile()
        token = _login(client)
        response = client.get("/v1/auth/me", params={"token": token})
        assert response.status_code == 200
        response = client.get("/v1/auth/me", params={"access_token": token})
        assert response.status_code == 200

    def test_cookie_token(self, client):
        _complete_profile()
        token = _login(client)
        client.cookies.set("session_token", token)
        response = client.get("/v1/auth/me")
        assert response.status_code == 200

    def test_logout_revokes_token(self, client):
        _complete_profile()
        token = _login(client)
        response = client.post("/v1/auth/logout", headers=_auth(token))
        assert response.status_code == 200
        assert response.json()["data"]["logged_out"] is True
        assert client.get("/v1/auth/me", headers=_auth(token)).status_code == 401

    def test_logout_without_token(self, client):
        response = client.post("/v1/auth/logout")
        assert response.status_code == 401


class TestDuplicateGuard:
    def test_identical_mutation_is_rejected(self, client):
        _complete_profile()
        token = _login(client)

        first = client.post("/v1/auth/token/refresh", headers=_auth(token))
        assert first.status_code == 200
        second = client.post("/v1/auth/token/refresh", headers=_auth(token))
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "duplicate_request"

        fresh = first.json()["data"]["session_token"]
        response = client.get("/v1/auth/duplicates/stats", headers=_auth(fresh))
        assert response.status_code == 200
        rejections = response.json()["data"]["rejections"]
        assert rejections["total"] == 1
        assert rejections["top_endpoints"][0]["endpoint"] == "POST /v1/auth/token/refresh"
        assert rejections["top_users"][0]["count"] == 1

    def test_different_bodies_are_not_duplicates(self, client, runtime):
        response = client.post("/v1/auth/email/request-code", json={"email": EMAIL})
        pending = response.json()["data"]["pending_token"]
        good = runtime.email_dispatcher.last_code()
        wrongs = [c for c in ("000000", "111111", "222222") if c != good][:2]
        for code in wrongs:
            response = client.post(
                "/v1/auth/email/verify-code", json={"code": code, "pending_token": pending}
            )
            assert response.status_code == 400

    def test_reads_are_never_guarded(self, client):
        _complete_profile()
        token = _login(client)
        for _ in range(3):
            assert client.get("/v1/auth/me", headers=_auth(token)).status_code == 200

    def test_guard_released_after_handler_error(self, client, runtime):
        # The first request fails inside the handler; its fingerprint still
        # lands in the recently-completed table rather than staying pending
        client.post("/v1/auth/email/verify-code", json={"code": "1", "pending_token": "x"})
        stats = runtime.duplicates.stats()
        assert stats["pending"] == 0
        assert stats["recently_completed"] == 1


class TestErrorEnvelope:
    def test_request_validation_uses_envelope(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email"})
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/auth/me", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_invalid_credentials(self, client):
        _complete_profile()
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": "wrong pass"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"
