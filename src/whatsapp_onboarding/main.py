"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from whatsapp_onboarding.api.limiter import limiter, rate_limit_handler
from whatsapp_onboarding.api.router import background_runner, whatsapp_service
from whatsapp_onboarding.api.router import router as auth_router
from whatsapp_onboarding.config import settings
from whatsapp_onboarding.database.engine import async_session_factory, init_db
from whatsapp_onboarding.exceptions import OnboardingError
from whatsapp_onboarding.services.housekeeping import ExpiredChallengeSweeper

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

logger = logging.getLogger(__name__)

# Seconds to let in-flight CRM syncs finish on shutdown
SHUTDOWN_DRAIN_SECONDS = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hook."""
    logger.info("Starting %s …", settings.app_name)
    await init_db()
    logger.info("Database initialised")

    if not await whatsapp_service.verify_config():
        logger.warning(
            "WhatsApp Cloud API configuration verification failed - check your credentials"
        )

    sweeper = ExpiredChallengeSweeper(
        async_session_factory, settings.otp_sweep_interval_seconds
    )
    sweeper.start()
    yield
    logger.info("Shutting down %s …", settings.app_name)
    await sweeper.stop()
    await background_runner.drain(timeout=SHUTDOWN_DRAIN_SECONDS)


app = FastAPI(
    title=settings.app_name,
    description="WhatsApp OTP onboarding with Zoho CRM lead sync",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)


@app.exception_handler(OnboardingError)
async def onboarding_error_handler(request: Request, exc: OnboardingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, **exc.extra},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = [_describe_validation_error(error) for error in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "; ".join(problems) or "Invalid request."},
    )


def _describe_validation_error(error: dict) -> str:
    field = ".".join(str(part) for part in error["loc"][1:]) or "body"
    return f"{field}: {error['msg']}"


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )


@app.get("/health")
async def health_check():
    """Simple liveness probe."""
    return {
        "success": True,
        "message": "Server is running",
        "app": settings.app_name,
        "timestamp": datetime.now(UTC).isoformat(),
    }
