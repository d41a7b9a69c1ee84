"""Domain errors raised by the onboarding services.

Each ``OnboardingError`` carries the HTTP status and a user-facing message;
the API layer renders them directly.  CRM errors never leave the sync
orchestrator.
"""

from __future__ import annotations

from typing import Any


class OnboardingError(Exception):
    """Base class for errors surfaced to the OTP caller."""

    status_code: int = 400
    default_message: str = "Request could not be processed."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class ValidationError(OnboardingError):
    default_message = "Invalid request."


class RateLimitedError(OnboardingError):
    status_code = 429
    default_message = "Please wait 1 minute before requesting another OTP."


class DeliveryFailedError(OnboardingError):
    status_code = 502
    default_message = (
        "Failed to send OTP. Please check your phone number and try again."
    )


class ChallengeNotFoundError(OnboardingError):
    status_code = 404
    default_message = "Invalid OTP request. Please request a new OTP."


class AlreadyUsedError(OnboardingError):
    default_message = "OTP already used. Please request a new OTP."


class ExpiredError(OnboardingError):
    default_message = "OTP expired. Please request a new OTP."


class TooManyAttemptsError(OnboardingError):
    default_message = "Too many failed attempts. Please request a new OTP."


class InvalidOTPError(OnboardingError):
    default_message = "Invalid OTP. Please try again."

    def __init__(self, attempts_remaining: int, message: str | None = None) -> None:
        super().__init__(message, attemptsRemaining=attempts_remaining)
        self.attempts_remaining = attempts_remaining


# ── Collaborator errors ──────────────────────────────────


class DeliveryError(Exception):
    """The messaging provider rejected the message or timed out."""


class CRMError(Exception):
    """Base class for CRM failures; absorbed by the sync orchestrator."""


class CRMAuthError(CRMError):
    """The OAuth token refresh failed."""


class CRMSyncError(CRMError):
    """Lead creation failed after every retry."""


class TokenError(Exception):
    """A session token is missing, malformed, or expired."""
