"""OTP helpers — generation, bcrypt hashing, and input normalisation."""

from __future__ import annotations

import re
import secrets
import uuid
from datetime import UTC, datetime, timedelta

import bcrypt

from whatsapp_onboarding.config import settings

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def generate_otp(length: int | None = None) -> str:
    """Return a numeric OTP drawn uniformly from ``[10^(L-1), 10^L - 1]``."""
    length = length or settings.otp_length
    lower = 10 ** (length - 1)
    upper = 10**length - 1
    return str(lower + secrets.randbelow(upper - lower + 1))


def hash_otp(otp: str, rounds: int | None = None) -> str:
    """Salted one-way hash of *otp*."""
    salt = bcrypt.gensalt(rounds=rounds or settings.otp_hash_rounds)
    return bcrypt.hashpw(otp.encode("utf-8"), salt).decode("utf-8")


def compare_otp(otp: str, otp_hash: str) -> bool:
    """Check *otp* against a stored hash; malformed hashes never match."""
    try:
        return bcrypt.checkpw(otp.encode("utf-8"), otp_hash.encode("utf-8"))
    except ValueError:
        return False


def generate_challenge_id() -> str:
    return str(uuid.uuid4())


def otp_expiry(now: datetime, minutes: int | None = None) -> datetime:
    return now + timedelta(minutes=minutes or settings.otp_expiry_minutes)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def normalize_phone(phone: str, default_country_code: str | None = None) -> str:
    """Strip formatting from *phone* and ensure a leading country code.

    ``"98765 43210"`` → ``"+919876543210"`` with the default ``+91``.
    """
    normalized = re.sub(r"[^\d+]", "", phone or "")
    if normalized and not normalized.startswith("+"):
        normalized = (default_country_code or settings.default_country_code) + normalized
    return normalized


def is_valid_phone(phone: str) -> bool:
    return bool(E164_PATTERN.match(phone))


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))
