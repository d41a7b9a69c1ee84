"""Auth API router — OTP request/verify endpoints and the current-user lookup.

Endpoints
---------
POST /api/auth/request-otp   → issue an OTP over WhatsApp
POST /api/auth/verify-otp    → verify an OTP and return a session token
GET  /api/auth/me            → profile of the bearer-token holder
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from whatsapp_onboarding.api.limiter import (
    OTP_REQUEST_LIMIT_MESSAGE,
    OTP_VERIFY_LIMIT_MESSAGE,
    limiter,
    otp_id_key,
    otp_request_limit,
    otp_verify_limit,
    phone_key,
)
from whatsapp_onboarding.database.engine import async_session_factory, get_session
from whatsapp_onboarding.database.repository import UserRepository
from whatsapp_onboarding.exceptions import TokenError
from whatsapp_onboarding.services.crm_client import TokenCache, ZohoCRMClient
from whatsapp_onboarding.services.crm_sync import BackgroundTaskRunner, CRMSyncOrchestrator
from whatsapp_onboarding.services.otp_lifecycle import OTPLifecycleManager
from whatsapp_onboarding.services.security import (
    TokenClaims,
    create_access_token,
    decode_access_token,
)
from whatsapp_onboarding.services.whatsapp_service import WhatsAppService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

# ── Shared instances (created once, reused across requests) ──
background_runner = BackgroundTaskRunner()
whatsapp_service = WhatsAppService()
crm_sync = CRMSyncOrchestrator(
    ZohoCRMClient(token_cache=TokenCache()),
    async_session_factory,
    background_runner,
)


# ── Request / response models ────────────────────────────

class CamelModel(BaseModel):
    """JSON bodies use camelCase keys; Python code uses the field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestOTPBody(CamelModel):
    name: str
    phone: str
    email: str


class RequestOTPResponse(CamelModel):
    success: bool = True
    message: str
    otp_id: str
    expires_in: int


class VerifyOTPBody(CamelModel):
    otp_id: str
    otp: str
    phone: str


class UserOut(CamelModel):
    id: str
    name: str
    email: str
    phone: str
    is_verified: bool


class UserDetailOut(UserOut):
    crm_synced: bool
    last_login: datetime | None = None
    created_at: datetime | None = None


class VerifyOTPResponse(CamelModel):
    success: bool = True
    message: str
    token: str
    user: UserOut


class CurrentUserResponse(CamelModel):
    success: bool = True
    user: UserDetailOut


# ── Dependencies ─────────────────────────────────────────

def get_otp_manager(db: AsyncSession = Depends(get_session)) -> OTPLifecycleManager:
    return OTPLifecycleManager(db_session=db, delivery=whatsapp_service, crm_sync=crm_sync)


def get_token_claims(authorization: str | None = Header(default=None)) -> TokenClaims:
    """Decode the ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")
    try:
        return decode_access_token(authorization.removeprefix("Bearer ").strip())
    except TokenError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise HTTPException(status_code=401, detail=str(exc)) from exc


# ── Endpoints ────────────────────────────────────────────

@router.post("/request-otp", response_model=RequestOTPResponse)
@limiter.limit(
    otp_request_limit, key_func=phone_key, error_message=OTP_REQUEST_LIMIT_MESSAGE
)
async def request_otp(
    request: Request,
    body: RequestOTPBody,
    manager: OTPLifecycleManager = Depends(get_otp_manager),
):
    """Issue an OTP and send it to the caller's WhatsApp number."""
    issued = await manager.issue(name=body.name, phone=body.phone, email=body.email)
    return RequestOTPResponse(
        message="OTP sent to your WhatsApp number",
        otp_id=issued.challenge_id,
        expires_in=issued.expires_in_minutes,
    )


@router.post("/verify-otp", response_model=VerifyOTPResponse)
@limiter.limit(
    otp_verify_limit, key_func=otp_id_key, error_message=OTP_VERIFY_LIMIT_MESSAGE
)
async def verify_otp(
    request: Request,
    body: VerifyOTPBody,
    manager: OTPLifecycleManager = Depends(get_otp_manager),
):
    """Verify an OTP; on success return a session token and the profile."""
    verified = await manager.verify(
        challenge_id=body.otp_id, otp=body.otp, phone=body.phone
    )
    token = create_access_token(
        user_id=verified.user_id, phone=verified.phone, email=verified.email
    )
    return VerifyOTPResponse(
        message="OTP verified successfully",
        token=token,
        user=UserOut(
            id=verified.user_id,
            name=verified.name,
            email=verified.email,
            phone=verified.phone,
            is_verified=verified.is_verified,
        ),
    )


@router.get("/me", response_model=CurrentUserResponse)
async def current_user(
    claims: TokenClaims = Depends(get_token_claims),
    db: AsyncSession = Depends(get_session),
):
    """Return the profile of the authenticated user."""
    user = await UserRepository(db).find_by_id(claims.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return CurrentUserResponse(
        user=UserDetailOut(
            id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
            is_verified=user.is_verified,
            crm_synced=user.crm_synced,
            last_login=user.last_login,
            created_at=user.created_at,
        )
    )