"""WhatsApp OTP Onboarding — configuration loaded from environment."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings, loaded from .env or environment variables."""

    # ── Database ──────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./whatsapp_onboarding.db"

    # ── WhatsApp Business API ─────────────────────────────
    whatsapp_api_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_api_version: str = "v21.0"
    whatsapp_template_name: str = "otp_verification"
    whatsapp_template_language: str = "en"
    whatsapp_timeout_seconds: float = 10.0

    # ── OTP ───────────────────────────────────────────────
    otp_length: int = 6
    otp_expiry_minutes: int = 5
    otp_max_attempts: int = 5
    otp_resend_cooldown_seconds: int = 60
    otp_hash_rounds: int = 10
    otp_sweep_interval_seconds: int = 60
    otp_request_rate_limit: str = "3/15 minutes"
    otp_verify_rate_limit: str = "5/15 minutes"
    default_country_code: str = "+91"

    # ── Zoho CRM ──────────────────────────────────────────
    zoho_client_id: str = ""
    zoho_client_secret: str = ""
    zoho_refresh_token: str = ""
    zoho_accounts_url: str = "https://accounts.zoho.com"
    zoho_api_domain: str = "https://www.zohoapis.com"
    zoho_timeout_seconds: float = 10.0
    crm_sync_enabled: bool = True
    crm_max_attempts: int = 3
    crm_retry_delays: list[float] = [1.0, 3.0, 9.0]
    crm_token_refresh_margin_seconds: int = 60

    # ── Session tokens ────────────────────────────────────
    jwt_secret: str = "change-me-in-production-use-a-long-random-secret"
    jwt_algorithm: str = "HS256"
    jwt_expiry_days: int = 7

    # ── App ───────────────────────────────────────────────
    app_name: str = "WhatsApp OTP Onboarding"
    debug: bool = True
    frontend_url: str = "http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton settings instance
settings = Settings()
