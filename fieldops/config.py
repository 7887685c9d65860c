"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.

Orchestration tunables here are process-wide defaults only. Algorithms receive
them through OrchestrationConfig (fieldops/schemas/orchestration.py), with
per-tenant overrides merged at call time.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    allowed_origins: str = ""  # Comma-separated CORS origins

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Twilio (texts)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_phone: str = ""
    twilio_messaging_service_sid: str = ""

    # Vapi (outbound voice calls)
    vapi_api_key: str = ""
    vapi_assistant_id: str = ""
    vapi_phone_number_id: str = ""
    vapi_base_url: str = "https://api.vapi.ai"

    # Telegram (crew chat)
    telegram_bot_token: str = ""

    # Stripe (payment links)
    stripe_secret_key: str = ""

    # Owner / operator
    owner_phone: str = ""
    alert_webhook_url: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Cron trigger auth (Authorization: Bearer <secret>)
    cron_secret: str = ""

    # Workers
    task_runner_enabled: bool = True
    timeout_monitor_enabled: bool = True
    task_poll_interval_seconds: int = 60
    monitor_interval_seconds: int = 300

    # Task store
    task_batch_size: int = 50
    task_max_attempts: int = 3
    task_claim_timeout_seconds: int = 600

    # Lead follow-up sequence (minutes until the next stage, stages 1-4)
    followup_stage_delays_minutes: list[int] = Field(default_factory=lambda: [10, 5, 5, 10])
    double_call_gap_seconds: int = 30

    # Assignment escalation
    standard_timeout_minutes: int = 30
    urgent_timeout_minutes: int = 15
    owner_alert_minutes: int = 30
    max_followup_attempts: int = 10
    cancel_reassign_interval_minutes: int = 20
    cancel_reassign_lookback_minutes: int = 180
    urgent_keywords: list[str] = Field(
        default_factory=lambda: ["urgent", "asap", "same day", "sameday", "today", "rush"]
    )

    # Business defaults
    business_timezone: str = "America/Los_Angeles"
    business_close_hour: int = 19
    default_appointment_hours: float = 3.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
