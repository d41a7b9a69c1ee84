"""End-to-end tests for the auth API routes."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from whatsapp_onboarding.api import router as auth_routes
from whatsapp_onboarding.api.limiter import (
    OTP_REQUEST_LIMIT_MESSAGE,
    OTP_VERIFY_LIMIT_MESSAGE,
    limiter,
)
from whatsapp_onboarding.config import settings
from whatsapp_onboarding.database.engine import get_session
from whatsapp_onboarding.exceptions import DeliveryError
from whatsapp_onboarding.main import app
from whatsapp_onboarding.services.crm_client import ZohoCRMClient
from whatsapp_onboarding.services.crm_sync import BackgroundTaskRunner, CRMSyncOrchestrator

PHONE = "+919876543210"


@pytest.fixture
def runner():
    return BackgroundTaskRunner()


@pytest.fixture
def crm_client():
    client = ZohoCRMClient()
    client.create_lead = AsyncMock(return_value="lead-42")
    return client


@pytest_asyncio.fixture
async def api(session_factory, runner, crm_client, monkeypatch):
    """HTTP client wired to the test DB, a mocked WhatsApp channel and CRM."""

    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    limiter.reset()
    monkeypatch.setattr(
        auth_routes.whatsapp_service, "send_otp", AsyncMock(return_value="wamid.1")
    )
    monkeypatch.setattr(
        auth_routes,
        "crm_sync",
        CRMSyncOrchestrator(crm_client, session_factory, runner),
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await runner.drain()
    app.dependency_overrides.clear()


async def _request_otp(api: httpx.AsyncClient, secret: str = "483920") -> str:
    with patch(
        "whatsapp_onboarding.services.otp_lifecycle.generate_otp", return_value=secret
    ):
        resp = await api.post(
            "/api/auth/request-otp",
            json={"name": "Asha Rao", "phone": PHONE, "email": "a@x.com"},
        )
    assert resp.status_code == 200, resp.text
    return resp.json()["otpId"]


@pytest.mark.asyncio
async def test_health(api):
    resp = await api.get("/health")
    assert resp.status_code == 200
    assert resp.json()["success"] is True


@pytest.mark.asyncio
async def test_request_otp(api):
    resp = await api.post(
        "/api/auth/request-otp",
        json={"name": "Asha Rao", "phone": PHONE, "email": "a@x.com"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["otpId"]
    assert body["expiresIn"] == 5
    assert "otp" not in body


@pytest.mark.asyncio
async def test_request_otp_invalid_phone(api):
    resp = await api.post(
        "/api/auth/request-otp",
        json={"name": "Asha Rao", "phone": "+0000", "email": "a@x.com"},
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert "E.164" in resp.json()["message"]


@pytest.mark.asyncio
async def test_request_otp_cooldown(api):
    await _request_otp(api)
    resp = await api.post(
        "/api/auth/request-otp",
        json={"name": "Asha Rao", "phone": PHONE, "email": "a@x.com"},
    )
    assert resp.status_code == 429


@pytest.mark.asyncio
async def test_request_otp_delivery_failure(api):
    auth_routes.whatsapp_service.send_otp.side_effect = DeliveryError("down")
    resp = await api.post(
        "/api/auth/request-otp",
        json={"name": "Asha Rao", "phone": PHONE, "email": "a@x.com"},
    )
    assert resp.status_code == 502
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_full_flow(api, runner, crm_client):
    otp_id = await _request_otp(api)

    resp = await api.post(
        "/api/auth/verify-otp", json={"otpId": otp_id, "otp": "000000", "phone": PHONE}
    )
    assert resp.status_code == 400
    assert resp.json()["attemptsRemaining"] == 4

    resp = await api.post(
        "/api/auth/verify-otp", json={"otpId": otp_id, "otp": "483920", "phone": PHONE}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["phone"] == PHONE
    assert body["user"]["isVerified"] is True
    token = body["token"]

    await runner.drain()
    crm_client.create_lead.assert_awaited_once()

    resp = await api.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200
    user = resp.json()["user"]
    assert user["name"] == "Asha Rao"
    assert user["crmSynced"] is True


@pytest.mark.asyncio
async def test_verify_unknown_challenge(api):
    resp = await api.post(
        "/api/auth/verify-otp", json={"otpId": "missing", "otp": "123456", "phone": PHONE}
    )
    assert resp.status_code == 404
    assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_me_requires_token(api):
    resp = await api.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json()["message"] == "Access denied. No token provided."

    resp = await api.get("/api/auth/me", headers={"Authorization": "Bearer junk"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid token."


@pytest.mark.asyncio
async def test_verify_accepts_snake_case_keys(api):
    otp_id = await _request_otp(api)
    resp = await api.post(
        "/api/auth/verify-otp", json={"otp_id": otp_id, "otp": "483920", "phone": PHONE}
    )
    assert resp.status_code == 200
    assert resp.json()["user"]["isVerified"] is True


@pytest.mark.asyncio
async def test_malformed_body_uses_error_envelope(api):
    resp = await api.post("/api/auth/verify-otp", json={"otp": "123456"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "otpId" in body["message"]
    assert "phone" in body["message"]
    assert "detail" not in body


@pytest.mark.asyncio
async def test_otp_requests_are_limited_per_phone(api):
    payload = {"name": "Asha Rao", "phone": PHONE, "email": "a@x.com"}
    statuses = []
    for _ in range(3):
        resp = await api.post("/api/auth/request-otp", json=payload)
        statuses.append(resp.status_code)
    assert statuses == [200, 429, 429]

    resp = await api.post("/api/auth/request-otp", json=payload)
    assert resp.status_code == 429
    assert resp.json() == {"success": False, "message": OTP_REQUEST_LIMIT_MESSAGE}

    other = await api.post(
        "/api/auth/request-otp", json={**payload, "phone": "+919812345678"}
    )
    assert other.status_code == 200


@pytest.mark.asyncio
async def test_verify_attempts_are_limited_per_otp_id(api):
    otp_id = await _request_otp(api)
    wrong = {"otpId": otp_id, "otp": "000000", "phone": PHONE}
    for _ in range(5):
        resp = await api.post("/api/auth/verify-otp", json=wrong)
        assert resp.status_code == 400

    resp = await api.post("/api/auth/verify-otp", json=wrong)
    assert resp.status_code == 429
    assert resp.json() == {"success": False, "message": OTP_VERIFY_LIMIT_MESSAGE}


@pytest.mark.asyncio
async def test_cors_allows_frontend_origin(api):
    resp = await api.options(
        "/api/auth/request-otp",
        headers={"Origin": settings.frontend_url, "Access-Control-Request-Method": "POST"},
    )
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == settings.frontend_url
