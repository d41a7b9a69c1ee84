"""Shared fixtures — in-memory database, fake clock, fast hashing."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from whatsapp_onboarding.config import settings
from whatsapp_onboarding.models.otp_challenge import OTPChallenge  # noqa: F401
from whatsapp_onboarding.models.user import Base


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """Cheap bcrypt rounds and deterministic OTP settings for every test."""
    monkeypatch.setattr(settings, "otp_hash_rounds", 4)
    monkeypatch.setattr(settings, "otp_length", 6)
    monkeypatch.setattr(settings, "otp_expiry_minutes", 5)
    monkeypatch.setattr(settings, "otp_max_attempts", 5)
    monkeypatch.setattr(settings, "otp_resend_cooldown_seconds", 60)
    monkeypatch.setattr(settings, "crm_sync_enabled", True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC))


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory DB per test."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
