"""Request rate limiting for the auth routes.

OTP requests are counted per phone number and verification attempts per
``otpId``; both fall back to the client address when the field is missing.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from whatsapp_onboarding.config import settings

logger = logging.getLogger(__name__)

OTP_REQUEST_LIMIT_MESSAGE = "Too many OTP requests. Please try again after 15 minutes."
OTP_VERIFY_LIMIT_MESSAGE = "Too many verification attempts. Please request a new OTP."

limiter = Limiter(key_func=get_remote_address)


def body_field_key(*fields: str) -> Callable[[Request], str]:
    """Build a key function that reads the first present field of the JSON body."""

    def key_func(request: Request) -> str:
        # FastAPI has already read and cached the body before limits are checked.
        raw = getattr(request, "_body", b"")
        try:
            body = json.loads(raw) if raw else {}
        except ValueError:
            body = {}
        if isinstance(body, dict):
            for field in fields:
                value = body.get(field)
                if value:
                    return f"{field}:{value}"
        return get_remote_address(request)

    return key_func


phone_key = body_field_key("phone")
otp_id_key = body_field_key("otpId", "otp_id")


def otp_request_limit() -> str:
    return settings.otp_request_rate_limit


def otp_verify_limit() -> str:
    return settings.otp_verify_rate_limit


def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning("Rate limit exceeded on %s: %s", request.url.path, exc.detail)
    return JSONResponse(
        status_code=429,
        content={"success": False, "message": exc.detail},
    )
