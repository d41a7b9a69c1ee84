"""Repositories — data access layer for OTP challenges and users.

Both repositories work on a caller-owned ``AsyncSession``.  Methods that
must be durable on their own (attempt counting, consumption, rollback of a
failed delivery) commit before returning; the rest leave the transaction
to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from whatsapp_onboarding.models.otp_challenge import OTPChallenge
from whatsapp_onboarding.models.user import User

logger = logging.getLogger(__name__)


class OTPChallengeRepository:
    """Encapsulates all database queries related to OTP challenges."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, challenge: OTPChallenge) -> OTPChallenge:
        """Persist a freshly issued challenge and commit."""
        self._session.add(challenge)
        await self._session.commit()
        return challenge

    async def find_by_id_and_phone(
        self, challenge_id: str, phone: str
    ) -> OTPChallenge | None:
        """Look up a challenge; both the id and the phone must match."""
        stmt = (
            select(OTPChallenge)
            .where(
                OTPChallenge.challenge_id == challenge_id,
                OTPChallenge.phone == phone,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def increment_attempts(self, challenge_id: str) -> int:
        """Atomically add one attempt, commit, and return the new count.

        The increment is a single ``UPDATE ... SET attempts = attempts + 1``
        so concurrent verifications on the same challenge cannot lose a
        count.  The commit happens before the caller sees the value.
        """
        await self._session.execute(
            update(OTPChallenge)
            .where(OTPChallenge.challenge_id == challenge_id)
            .values(attempts=OTPChallenge.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        attempts = await self._session.scalar(
            select(OTPChallenge.attempts).where(
                OTPChallenge.challenge_id == challenge_id
            )
        )
        await self._session.commit()
        return int(attempts or 0)

    async def mark_used(self, challenge_id: str) -> bool:
        """Consume the challenge and commit.

        Returns ``False`` when another request consumed it first.
        """
        result = await self._session.execute(
            update(OTPChallenge)
            .where(
                OTPChallenge.challenge_id == challenge_id,
                OTPChallenge.is_used.is_(False),
            )
            .values(is_used=True)
            .execution_options(synchronize_session=False)
        )
        await self._session.commit()
        return result.rowcount == 1

    async def delete(self, challenge_id: str) -> None:
        """Remove a challenge outright and commit."""
        await self._session.execute(
            delete(OTPChallenge).where(OTPChallenge.challenge_id == challenge_id)
        )
        await self._session.commit()

    async def has_recent_for_phone(
        self, phone: str, within_seconds: int, now: datetime
    ) -> bool:
        """Return ``True`` if a challenge for *phone* was created recently."""
        cutoff = now - timedelta(seconds=within_seconds)
        stmt = select(func.count()).where(
            OTPChallenge.phone == phone,
            OTPChallenge.created_at >= cutoff,
        )
        count = await self._session.scalar(stmt)
        return bool(count)

    async def purge_expired(self, now: datetime) -> int:
        """Delete every challenge whose expiry has passed; return the count."""
        result = await self._session.execute(
            delete(OTPChallenge).where(OTPChallenge.expires_at <= now)
        )
        await self._session.commit()
        return result.rowcount or 0


class UserRepository:
    """Encapsulates all database queries related to users."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def find_by_phone(self, phone: str) -> User | None:
        """Look up a user by their phone number.

        The phone is expected in E.164 format (e.g. ``+15551234567``).
        """
        stmt = (
            select(User)
            .where(User.phone == phone)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_id(self, user_id: str) -> User | None:
        return await self._session.get(User, user_id, populate_existing=True)

    async def upsert_verified(
        self, *, name: str, phone: str, email: str, now: datetime
    ) -> User:
        """Create or refresh the verified user for *phone* and commit.

        Profile fields are last-writer-wins; ``crm_synced`` and ``crm_id``
        are left untouched on an existing user.  If a concurrent verify for
        the same phone inserts first, the unique constraint rejects this
        insert and the row it created is updated instead.
        """
        user = await self.find_by_phone(phone)
        if user is None:
            user = User(
                name=name,
                phone=phone,
                email=email,
                is_verified=True,
                crm_synced=False,
                last_login=now,
            )
            self._session.add(user)
            try:
                await self._session.commit()
                return user
            except IntegrityError:
                await self._session.rollback()
                logger.info("User %s was created concurrently; updating it", phone)
                user = await self.find_by_phone(phone)
                if user is None:
                    raise

        user.name = name
        user.email = email
        user.is_verified = True
        user.last_login = now
        await self._session.commit()
        return user

    async def save(self, user: User) -> User:
        self._session.add(user)
        await self._session.commit()
        return user
