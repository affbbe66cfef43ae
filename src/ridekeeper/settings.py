"""Application settings via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ["Settings"]


class Settings(BaseSettings):
    """Central configuration, read from the environment.

    Built once at startup and handed to every component; nothing reads
    the environment after construction.
    """

    model_config = SettingsConfigDict(env_prefix="RIDEKEEPER_", frozen=True)

    # Feature flags
    inference_enabled: bool = False
    test_mode: bool = True

    # Anthropic inference
    anthropic_api_key: str = ""
    risk_model: str = "claude-sonnet-4-20250514"
    intent_model: str = "claude-3-haiku-20240307"

    # Twilio SMS
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_status_callback_url: str = ""

    # Ride provider
    ride_provider_url: str = ""
    ride_provider_token: str = ""

    # PostgreSQL (event log)
    pg_dsn: str = ""

    # Redis (webhook idempotency)
    redis_url: str = ""

    # Care-site local time
    timezone: str = "America/Los_Angeles"

    # Timing
    external_timeout_seconds: float = 10.0
    assessment_cache_hours: int = 24
    pickup_offset_minutes: int = 45
    no_show_window_months: int = 6

    # Scheduler
    scheduler_enabled: bool = False

    # Logging
    log_json: bool = True
    log_level: str = "INFO"

    @property
    def inference_configured(self) -> bool:
        """True when the inference provider may be called at all."""
        return self.inference_enabled and not self.test_mode and bool(self.anthropic_api_key)
