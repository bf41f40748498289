from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "/data/healthsync.db"

    # Public base URL, used to build OAuth redirect URIs and settings redirects
    app_url: str = "http://localhost:8000"

    # Withings (scale provider) OAuth app
    withings_client_id: str = ""
    withings_client_secret: str = ""

    # Google (calendar provider) OAuth app
    google_client_id: str = ""
    google_client_secret: str = ""

    # Shared secret for the Health Auto Export webhook
    apple_health_webhook_secret: str = ""

    # Sync and reconciliation policy
    sync_lookback_days: int = 30
    duplicate_window_minutes: int = 30
    duplicate_weight_tolerance_lbs: float = 0.5
    token_refresh_margin_seconds: int = 60  # refresh 1 minute before official expiry
    http_timeout_seconds: float = 30.0

    # Optional settings
    tz: str = "America/New_York"
    scheduled_sync_enabled: bool = False
    sync_hour: int = 6
    debug: bool = False

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
