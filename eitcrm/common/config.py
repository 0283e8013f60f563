"""Central environment-driven settings shared by both services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`). Components never read
this module directly; `main.py` passes the relevant values into constructors.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    telegram_bot_token: str = ""
    telegram_bot_username: str = ""
    telegram_api_base: str = "https://api.telegram.org"
    telegram_timeout_seconds: float = 15.0
    telegram_webhook_secret: str = ""
    cron_secret: str = ""
    admin_api_secret: str = ""

    delivery_max_attempts: int = 10
    delivery_backoff_base_seconds: float = 30.0
    delivery_backoff_cap_seconds: float = 6 * 60 * 60
    delivery_backoff_jitter_seconds: float = 5.0
    sweep_default_limit: int = 50
    sweep_max_limit: int = 200

    pending_link_ttl_minutes: int = 15
    attendance_warning_threshold_percent: float = 70.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
