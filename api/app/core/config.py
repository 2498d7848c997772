"""Application configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "AgendaCerta"
    debug: bool = True
    secret_key: str = "dev-secret-change-in-production"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://agenda:agenda@db:5432/agenda"
    database_echo: bool = False

    # Auth (tokens are issued by the identity service, we only verify them)
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Scheduling
    max_series_days: int = 366

    # Google Calendar
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/api/v1/calendar/oauth2callback"
    google_webhook_url: str = "http://localhost:8000/api/v1/calendar/webhook"
    google_calendar_id: str = "primary"
    google_event_timezone: str = "America/Sao_Paulo"
    google_http_timeout_seconds: float = 15.0
    google_token_refresh_skew_seconds: int = 60
    frontend_url: str = "http://localhost:3000"

    # Calendar sync retry policy
    sync_max_attempts: int = 4
    sync_base_delay_seconds: float = 0.5
    sync_backoff_multiplier: float = 2.0
    sync_max_delay_seconds: float = 8.0

    model_config = {"env_prefix": "AC_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
