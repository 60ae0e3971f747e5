"""Tests for the /api/v1/client endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from keygate_core.audit.dispatcher import SIGNATURE_HEADER, NotificationDispatcher
from keygate_core.auth.orchestrator import AuthOrchestrator
from keygate_core.state import SqlRepository, get_session

BASE = "/api/v1/client"


def _headers(application) -> dict[str, str]:
    return {"X-API-Key": application.api_key}


async def _register(client, application, username="alice", password="secret1", **extra):
    body = {"username": username, "password": password, **extra}
    return await client.post(f"{BASE}/register", json=body, headers=_headers(application))


async def _login(client, application, username="alice", password="secret1", **extra):
    body = {"username": username, "password": password, **extra}
    return await client.post(f"{BASE}/login", json=body, headers=_headers(application))


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_consumes_seat(self, client, engine, application, license_key):
        resp = await _register(client, application, license_key="SEAT-0001", email="alice@example.com")

        assert resp.status_code == 201
        data = resp.json()
        assert data["success"] is True
        assert data["message"] == application.messages.register_success
        assert data["user"]["username"] == "alice"
        assert data["user"]["email"] == "alice@example.com"
        assert "password_hash" not in data["user"]

        async with get_session(engine) as session:
            stored = await SqlRepository(session).license_keys.by_id(license_key.id)
        assert stored.current_users == 1

    @pytest.mark.asyncio
    async def test_second_registration_on_full_key(self, client, application, license_key):
        assert (await _register(client, application, "alice", license_key="SEAT-0001")).status_code == 201

        resp = await _register(client, application, "bob", license_key="SEAT-0001")

        assert resp.status_code == 403
        assert resp.json() == {
            "success": False,
            "message": application.messages.license_invalid,
            "reason": "seats_exhausted",
            "user": None,
        }

    @pytest.mark.asyncio
    async def test_missing_license(self, client, application):
        resp = await _register(client, application)
        assert resp.status_code == 403
        assert resp.json()["reason"] == "license_not_found"

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, client, open_application):
        resp = await _register(client, open_application, is_admin=True)
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_email_rejected(self, client, open_application):
        resp = await _register(client, open_application, email="not-an-email")
        assert resp.status_code == 422


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_returns_session(self, client, open_application):
        await _register(client, open_application)

        resp = await client.post(
            f"{BASE}/login",
            json={"username": "alice", "password": "secret1", "hwid": "HW-1"},
            headers={**_headers(open_application), "X-Forwarded-For": "198.51.100.7, 10.0.0.1"},
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["session_token"]
        assert data["session_expires_at"] is not None
        assert data["user"]["last_login"] is not None

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, open_application):
        await _register(client, open_application)
        resp = await _login(client, open_application, password="wrong")
        assert resp.status_code == 403
        assert resp.json()["reason"] == "invalid_credentials"
        assert resp.json()["message"] == open_application.messages.login_failed

    @pytest.mark.asyncio
    async def test_unknown_api_key(self, client):
        resp = await client.post(
            f"{BASE}/login",
            json={"username": "alice", "password": "secret1"},
            headers={"X-API-Key": "kg_nope"},
        )
        assert resp.status_code == 401
        assert resp.json()["reason"] == "invalid_application"

    @pytest.mark.asyncio
    async def test_missing_api_key_header(self, client):
        resp = await client.post(f"{BASE}/login", json={"username": "alice", "password": "secret1"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_paused_user(self, client, seed, open_application):
        user = await seed("create_app_user", open_application.id, "carl", "carlpw1")
        await seed("pause_app_user", user.id)

        resp = await _login(client, open_application, "carl", "carlpw1")

        assert resp.status_code == 403
        assert resp.json()["reason"] == "account_paused"
        assert resp.json()["session_token"] is None
        activity = await seed("list_activity", open_application.id)
        assert activity[0].success is False

    @pytest.mark.asyncio
    async def test_blacklisted_ip(self, client, seed, open_application):
        await _register(client, open_application)
        await seed("add_blacklist_entry", open_application.id, "ip", "203.0.113.9")

        resp = await client.post(
            f"{BASE}/login",
            json={"username": "alice", "password": "secret1"},
            headers={**_headers(open_application), "X-Forwarded-For": "203.0.113.9"},
        )

        assert resp.status_code == 403
        assert resp.json()["reason"] == "blacklisted"

    @pytest.mark.asyncio
    async def test_infrastructure_failure_maps_to_503(self, client, open_application):
        with patch.object(
            AuthOrchestrator, "_login", AsyncMock(side_effect=ConnectionError("database went away"))
        ):
            resp = await _login(client, open_application)
        assert resp.status_code == 503
        assert resp.json()["success"] is False

    @pytest.mark.asyncio
    async def test_signed_webhook_delivered(self, client, seed, open_application, dispatcher, webhook_requests):
        await seed(
            "create_webhook",
            open_application.id,
            "audit",
            "https://hooks.example.com/keygate",
            ["user_login"],
            secret="s3cret",
        )
        await _register(client, open_application)

        resp = await _login(client, open_application)
        await dispatcher.drain()

        assert resp.status_code == 200
        assert len(webhook_requests) == 1
        delivered = webhook_requests[0]
        assert delivered.headers["X-Webhook-Event"] == "user_login"
        assert NotificationDispatcher.verify_signature(
            delivered.content.decode("utf-8"), "s3cret", delivered.headers[SIGNATURE_HEADER]
        )


class TestSessions:
    @pytest.mark.asyncio
    async def test_heartbeat_then_logout(self, client, open_application):
        await _register(client, open_application)
        token = (await _login(client, open_application)).json()["session_token"]
        headers = _headers(open_application)

        beat = await client.post(f"{BASE}/heartbeat", json={"session_token": token}, headers=headers)
        assert beat.status_code == 200
        assert beat.json()["success"] is True

        out = await client.post(f"{BASE}/logout", json={"session_token": token}, headers=headers)
        assert out.status_code == 200

        again = await client.post(f"{BASE}/heartbeat", json={"session_token": token}, headers=headers)
        assert again.status_code == 401
        assert again.json()["success"] is False

    @pytest.mark.asyncio
    async def test_token_of_another_application(self, client, seed, open_application):
        other = await seed("create_application", "Other", settings=open_application.settings)
        await _register(client, open_application)
        token = (await _login(client, open_application)).json()["session_token"]

        resp = await client.post(f"{BASE}/logout", json={"session_token": token}, headers=_headers(other))

        assert resp.status_code == 401
        sessions = await seed("list_sessions", open_application.id)
        assert [s.session_token for s in sessions] == [token]


class TestHealthAndMiddleware:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["db"] == "ok"

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client):
        resp = await client.get("/api/v1/health", headers={"X-Correlation-ID": "trace-123"})
        assert resp.headers["X-Correlation-ID"] == "trace-123"

    @pytest.mark.asyncio
    async def test_correlation_id_generated(self, client):
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-ID"]) == 36

    @pytest.mark.asyncio
    async def test_api_key_masked_in_access_log(self, client, open_application, caplog):
        with caplog.at_level("INFO", logger="keygate_api.access"):
            await _login(client, open_application, password="whatever")
        records = [r for r in caplog.records if r.name == "keygate_api.access"]
        assert records
        headers = records[-1].request["headers"]
        assert headers["x-api-key"] == "***"
        assert open_application.api_key not in caplog.text
