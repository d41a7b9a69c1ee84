"""WhatsApp delivery channel — sends OTP template messages via the Meta Cloud API."""

from __future__ import annotations

import logging

import httpx

from whatsapp_onboarding.config import settings
from whatsapp_onboarding.exceptions import DeliveryError

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.facebook.com"


class WhatsAppService:
    """Thin async wrapper around the WhatsApp Cloud API messages endpoint.

    No retries are performed here: a failed send surfaces as
    ``DeliveryError`` and the caller decides what to roll back.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str = GRAPH_API_BASE_URL,
    ) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")

    @property
    def _phone_number_url(self) -> str:
        return (
            f"{self._base_url}/{settings.whatsapp_api_version}/"
            f"{settings.whatsapp_phone_number_id}"
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {settings.whatsapp_api_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport, timeout=settings.whatsapp_timeout_seconds
        )

    async def send_otp(self, phone: str, otp: str) -> str | None:
        """Deliver *otp* to *phone* using the configured template.

        Returns the provider message id.  Raises ``DeliveryError`` on any
        provider error, transport error or timeout.
        """
        if not settings.whatsapp_api_token or not settings.whatsapp_phone_number_id:
            logger.error("WhatsApp API credentials not configured; cannot send OTP")
            raise DeliveryError("WhatsApp API is not configured")

        to_phone = phone.lstrip("+")
        payload = {
            "messaging_product": "whatsapp",
            "to": to_phone,
            "type": "template",
            "template": {
                "name": settings.whatsapp_template_name,
                "language": {"code": settings.whatsapp_template_language},
                "components": [
                    {
                        "type": "body",
                        "parameters": [{"type": "text", "text": otp}],
                    }
                ],
            },
        }

        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self._phone_number_url}/messages",
                    json=payload,
                    headers=self._headers,
                )
        except httpx.TimeoutException as exc:
            logger.error("WhatsApp OTP send to %s timed out", to_phone)
            raise DeliveryError("WhatsApp API request timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("WhatsApp OTP send to %s failed: %s", to_phone, exc)
            raise DeliveryError("WhatsApp API request failed") from exc

        if resp.status_code // 100 != 2:
            detail = _provider_error_message(resp)
            logger.error(
                "WhatsApp OTP send to %s failed: %s %s",
                to_phone,
                resp.status_code,
                detail,
            )
            raise DeliveryError(f"WhatsApp API error: {detail}")

        message_id = _message_id(resp)
        logger.info("WhatsApp OTP sent to %s (message %s)", to_phone, message_id)
        return message_id

    async def verify_config(self) -> bool:
        """Probe the phone-number resource to confirm the credentials work."""
        if not settings.whatsapp_api_token or not settings.whatsapp_phone_number_id:
            logger.warning("WHATSAPP_API_TOKEN / WHATSAPP_PHONE_NUMBER_ID not set")
            return False
        try:
            async with self._client() as client:
                resp = await client.get(self._phone_number_url, headers=self._headers)
        except httpx.HTTPError as exc:
            logger.error("WhatsApp configuration check failed: %s", exc)
            return False

        if resp.status_code != 200:
            logger.error(
                "WhatsApp configuration check failed: %s %s",
                resp.status_code,
                resp.text,
            )
            return False

        logger.info(
            "WhatsApp configuration verified (display number %s)",
            _json_body(resp).get("display_phone_number"),
        )
        return True


def _json_body(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _provider_error_message(resp: httpx.Response) -> str:
    error = _json_body(resp).get("error")
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return resp.text


def _message_id(resp: httpx.Response) -> str | None:
    messages = _json_body(resp).get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        return messages[0].get("id")
    return None
