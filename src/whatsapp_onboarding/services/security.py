"""Session tokens issued after a successful OTP verification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt

from whatsapp_onboarding.config import settings
from whatsapp_onboarding.exceptions import TokenError


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    phone: str
    email: str


def create_access_token(*, user_id: str, phone: str, email: str) -> str:
    now = datetime.now(UTC)
    payload = {
        "user_id": user_id,
        "phone": phone,
        "email": email,
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expiry_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> TokenClaims:
    """Validate *token* and return its claims.

    Raises ``TokenError`` with a user-facing message on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenError("Token expired. Please login again.") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenError("Invalid token.") from exc

    try:
        return TokenClaims(
            user_id=str(payload["user_id"]),
            phone=str(payload["phone"]),
            email=str(payload["email"]),
        )
    except KeyError as exc:
        raise TokenError("Invalid token.") from exc
