"""Tests for the WhatsApp delivery channel."""

from __future__ import annotations

import json

import httpx
import pytest

from whatsapp_onboarding.config import settings
from whatsapp_onboarding.exceptions import DeliveryError
from whatsapp_onboarding.services.whatsapp_service import WhatsAppService


@pytest.fixture(autouse=True)
def whatsapp_settings(monkeypatch):
    monkeypatch.setattr(settings, "whatsapp_api_token", "meta-token")
    monkeypatch.setattr(settings, "whatsapp_phone_number_id", "1234567890")
    monkeypatch.setattr(settings, "whatsapp_api_version", "v21.0")
    monkeypatch.setattr(settings, "whatsapp_template_name", "otp_verification")


@pytest.mark.asyncio
async def test_send_otp_posts_template_message():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

    service = WhatsAppService(transport=httpx.MockTransport(handler))
    message_id = await service.send_otp("+919876543210", "483920")

    assert message_id == "wamid.ABC"
    assert captured["url"] == "https://graph.facebook.com/v21.0/1234567890/messages"
    assert captured["auth"] == "Bearer meta-token"
    body = captured["body"]
    assert body["to"] == "919876543210"
    assert body["type"] == "template"
    assert body["template"]["name"] == "otp_verification"
    params = body["template"]["components"][0]["parameters"]
    assert params == [{"type": "text", "text": "483920"}]


@pytest.mark.asyncio
async def test_send_otp_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400, json={"error": {"message": "Recipient phone number not in allowed list"}}
        )

    service = WhatsAppService(transport=httpx.MockTransport(handler))
    with pytest.raises(DeliveryError, match="not in allowed list"):
        await service.send_otp("+919876543210", "483920")


@pytest.mark.asyncio
async def test_send_otp_timeout_is_delivery_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    service = WhatsAppService(transport=httpx.MockTransport(handler))
    with pytest.raises(DeliveryError, match="timed out"):
        await service.send_otp("+919876543210", "483920")


@pytest.mark.asyncio
async def test_send_otp_without_credentials(monkeypatch):
    monkeypatch.setattr(settings, "whatsapp_api_token", "")

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    service = WhatsAppService(transport=httpx.MockTransport(handler))
    with pytest.raises(DeliveryError):
        await service.send_otp("+919876543210", "483920")


@pytest.mark.asyncio
async def test_verify_config():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"display_phone_number": "+1 555 0100"})

    service = WhatsAppService(transport=httpx.MockTransport(handler))
    assert await service.verify_config() is True


@pytest.mark.asyncio
async def test_verify_config_bad_credentials():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid OAuth access token"}})

    service = WhatsAppService(transport=httpx.MockTransport(handler))
    assert await service.verify_config() is False


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="OK"),
        httpx.Response(200, json={"messages": [None]}),
        httpx.Response(200, json=["wamid.ABC"]),
    ],
)
@pytest.mark.asyncio
async def test_send_otp_accepted_without_message_id(response):
    service = WhatsAppService(transport=httpx.MockTransport(lambda request: response))

    assert await service.send_otp("+919876543210", "483920") is None


@pytest.mark.asyncio
async def test_verify_config_tolerates_non_json_body():
    service = WhatsAppService(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok"))
    )
    assert await service.verify_config() is True
