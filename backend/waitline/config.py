"""
Application configuration using Pydantic Settings.
Loads from environment variables and .env file.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Waitline"
    app_env: str = "development"  # development, staging, production
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql://localhost:5432/waitline"

    # JWT Authentication
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Queue codes
    queue_code_length: int = 6
    queue_code_max_attempts: int = 5

    # Queue defaults
    default_time_per_person: int = 5  # minutes

    # Partial unique indexes on waiting members (queue_id, user_id) and
    # (queue_id, lower(display_name))
    enforce_waiting_uniqueness: bool = True

    # Close the queue and its waiters in one transaction instead of two steps
    atomic_end_queue: bool = False

    # Per-user sync contexts kept by the API
    session_idle_seconds: float = 300.0
    session_sweep_interval_seconds: float = 60.0

    # Address lookup (Nominatim compatible)
    address_lookup_url: str = "https://nominatim.openstreetmap.org/search"
    address_lookup_min_chars: int = 3
    address_lookup_limit: int = 5
    address_lookup_timeout_seconds: float = 10.0
    address_search_debounce_seconds: float = 0.32

    # Timezone used when showing "your turn around HH:MM"
    display_timezone: str = "UTC"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def async_database_url(self) -> str:
        """Database URL with an async driver."""
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if self.database_url.startswith("sqlite://"):
            return self.database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return self.database_url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
