"""Periodic removal of expired OTP challenges.

Verification always re-checks ``expires_at`` itself; the sweep only keeps
the table small.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from whatsapp_onboarding.database.repository import OTPChallengeRepository

logger = logging.getLogger(__name__)


class ExpiredChallengeSweeper:
    """Deletes expired challenges every ``interval_seconds``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None

    async def sweep_once(self) -> int:
        async with self._session_factory() as session:
            removed = await OTPChallengeRepository(session).purge_expired(self._clock())
        if removed:
            logger.info("Removed %d expired OTP challenge(s)", removed)
        return removed

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Expired challenge sweep failed")
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="otp-expiry-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
