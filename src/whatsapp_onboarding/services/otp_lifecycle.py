"""OTP lifecycle manager — issues WhatsApp passcodes and verifies them.

Challenge states
----------------
``created`` → ``used`` (terminal, successful verification)
``created`` → ``expired`` (terminal, ``now >= expires_at``)
``created`` → ``exhausted`` (terminal, more than ``otp_max_attempts`` tries)

Failed attempts loop back to ``created`` while attempts remain.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from whatsapp_onboarding.config import settings
from whatsapp_onboarding.database.repository import OTPChallengeRepository, UserRepository
from whatsapp_onboarding.exceptions import (
    AlreadyUsedError,
    ChallengeNotFoundError,
    DeliveryError,
    DeliveryFailedError,
    ExpiredError,
    InvalidOTPError,
    RateLimitedError,
    TooManyAttemptsError,
    ValidationError,
)
from whatsapp_onboarding.models.otp_challenge import OTPChallenge
from whatsapp_onboarding.models.user import User
from whatsapp_onboarding.services.crm_sync import CRMSyncOrchestrator
from whatsapp_onboarding.services.otp_utils import (
    compare_otp,
    ensure_utc,
    generate_challenge_id,
    generate_otp,
    hash_otp,
    is_valid_email,
    is_valid_phone,
    normalize_phone,
    otp_expiry,
)
from whatsapp_onboarding.services.whatsapp_service import WhatsAppService

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100


@dataclass(frozen=True)
class IssuedChallenge:
    """Returned to the caller after a successful issuance."""

    challenge_id: str
    expires_in_minutes: int


@dataclass(frozen=True)
class VerifiedUser:
    """Identity and profile of the user behind a successful verification."""

    user_id: str
    name: str
    email: str
    phone: str
    is_verified: bool

    @classmethod
    def from_user(cls, user: User) -> VerifiedUser:
        return cls(
            user_id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            is_verified=user.is_verified,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OTPLifecycleManager:
    """Orchestrates OTP issuance and verification for one request.

    Parameters
    ----------
    db_session:
        Session used for every store operation of this request.
    delivery:
        Channel that carries the plaintext OTP to the user.
    crm_sync:
        Orchestrator notified after a successful verification.  Optional so
        the flow can run without CRM integration.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        delivery: WhatsAppService,
        crm_sync: CRMSyncOrchestrator | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._challenges = OTPChallengeRepository(db_session)
        self._users = UserRepository(db_session)
        self._delivery = delivery
        self._crm_sync = crm_sync
        self._clock = clock

    # ── Issue ────────────────────────────────────────────

    async def issue(self, name: str, phone: str, email: str) -> IssuedChallenge:
        """Create a challenge for *phone* and deliver the OTP over WhatsApp."""
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name or not phone or not email:
            raise ValidationError("Name, phone, and email are required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Name cannot exceed {MAX_NAME_LENGTH} characters")

        phone = normalize_phone(phone)
        if not is_valid_phone(phone):
            raise ValidationError(
                "Invalid phone number format. Use E.164 format (e.g., +919876543210)"
            )
        if not is_valid_email(email):
            raise ValidationError("Invalid email format")

        now = self._clock()
        if await self._challenges.has_recent_for_phone(
            phone, settings.otp_resend_cooldown_seconds, now
        ):
            logger.info("OTP cooldown active for %s", phone)
            raise RateLimitedError()

        otp = generate_otp(settings.otp_length)
        otp_hash = await asyncio.to_thread(hash_otp, otp)
        challenge = OTPChallenge(
            challenge_id=generate_challenge_id(),
            phone=phone,
            name=name,
            email=email,
            otp_hash=otp_hash,
            is_used=False,
            attempts=0,
            created_at=now,
            expires_at=otp_expiry(now, settings.otp_expiry_minutes),
        )
        await self._challenges.create(challenge)

        try:
            await self._delivery.send_otp(phone, otp)
        except DeliveryError as exc:
            await self._challenges.delete(challenge.challenge_id)
            logger.error(
                "OTP delivery to %s failed, challenge %s rolled back: %s",
                phone,
                challenge.challenge_id,
                exc,
            )
            raise DeliveryFailedError() from exc
        except Exception:
            await self._challenges.delete(challenge.challenge_id)
            raise

        logger.info("OTP %s issued for %s (%s)", challenge.challenge_id, phone, email)
        return IssuedChallenge(
            challenge_id=challenge.challenge_id,
            expires_in_minutes=settings.otp_expiry_minutes,
        )

    # ── Verify ───────────────────────────────────────────

    async def verify(self, challenge_id: str, otp: str, phone: str) -> VerifiedUser:
        """Check *otp* against the challenge and sign the user in."""
        if not challenge_id or not otp or not phone:
            raise ValidationError("OTP ID, OTP, and phone number are required")
        phone = normalize_phone(phone)

        challenge = await self._challenges.find_by_id_and_phone(challenge_id, phone)
        if challenge is None:
            raise ChallengeNotFoundError()
        if challenge.is_used:
            raise AlreadyUsedError()
        if self._clock() >= ensure_utc(challenge.expires_at):
            raise ExpiredError()

        # Durable before the limit check and the comparison.
        attempts = await self._challenges.increment_attempts(challenge_id)
        max_attempts = settings.otp_max_attempts
        if attempts > max_attempts:
            logger.warning("Challenge %s exhausted after %d attempts", challenge_id, attempts)
            raise TooManyAttemptsError()

        if not await asyncio.to_thread(compare_otp, otp, challenge.otp_hash):
            remaining = max(0, max_attempts - attempts)
            logger.info(
                "Invalid OTP for challenge %s (%d attempts left)", challenge_id, remaining
            )
            raise InvalidOTPError(attempts_remaining=remaining)

        if not await self._challenges.mark_used(challenge_id):
            raise AlreadyUsedError()

        user = await self._users.upsert_verified(
            name=challenge.name,
            phone=phone,
            email=challenge.email,
            now=self._clock(),
        )
        logger.info("OTP %s verified for user %s (%s)", challenge_id, user.id, phone)

        if not user.crm_synced:
            self._schedule_crm_sync(user)

        return VerifiedUser.from_user(user)

    def _schedule_crm_sync(self, user: User) -> None:
        if self._crm_sync is None:
            return
        try:
            self._crm_sync.schedule(user)
        except Exception:
            # Verification has already succeeded; sync problems stay in the logs.
            logger.exception("Could not schedule CRM sync for user %s", user.id)
