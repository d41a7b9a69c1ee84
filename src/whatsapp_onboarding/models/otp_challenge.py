"""SQLAlchemy OTPChallenge model."""

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from whatsapp_onboarding.models.user import Base


class OTPChallenge(Base):
    """Server-side record of one outstanding OTP issuance.

    Only the bcrypt hash of the passcode is stored.  ``attempts`` and
    ``is_used`` are mutated exclusively by verification; ``is_used`` is
    terminal once set.
    """

    __tablename__ = "otp_challenges"

    challenge_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False)
    otp_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    __table_args__ = (
        Index("ix_otp_challenges_expires_at", "expires_at"),
        Index("ix_otp_challenges_phone_created_at", "phone", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<OTPChallenge id={self.challenge_id} phone={self.phone!r} "
            f"attempts={self.attempts} used={self.is_used}>"
        )
