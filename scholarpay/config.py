from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

PESAPAL_SANDBOX_URL = "https://cybqa.pesapal.com/pesapalv3/api"
PESAPAL_LIVE_URL = "https://pay.pesapal.com/v3/api"


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    api_bearer_token: str = "testtoken"
    api_basic_username: str = "admin"
    api_basic_password: str = "admin"
    frontend_url: str = "http://localhost:3000"

    # Pesapal config
    pesapal_environment: str = "sandbox"
    pesapal_consumer_key: str = ""
    pesapal_consumer_secret: str = ""
    # Overrides the environment-derived base URL when set
    pesapal_base_url: str = ""
    pesapal_default_notification_id: str = ""
    pesapal_callback_url: str = "http://localhost:8000/api/payments/pesapal/callback"
    pesapal_ipn_url: str = "http://localhost:8000/api/payments/pesapal/ipn"
    pesapal_default_currency: str = "KES"
    pesapal_supported_currencies: list[str] = ["KES", "USD", "EUR", "GBP"]
    pesapal_default_country_code: str = "KE"
    merchant_reference_prefix: str = "MALAIKA"

    # Gateway behaviour
    token_grace_seconds: int = 30
    http_connect_timeout: float = 5.0
    http_timeout: float = 30.0
    gateway_retry_attempts: int = 3
    gateway_retry_delay_seconds: float = 1.0
    refund_window_days: int = 365
    reconcile_conflict_retries: int = 3
    log_provider_events: bool = True

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "payments"

    @property
    def pesapal_api_url(self) -> str:
        if self.pesapal_base_url:
            return self.pesapal_base_url.rstrip("/")
        if self.pesapal_environment.lower() == "live":
            return PESAPAL_LIVE_URL
        return PESAPAL_SANDBOX_URL

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql+psycopg2://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # allow extra keys in .env like APP_ENV, APP_URL, etc.
    )


settings = Settings()
