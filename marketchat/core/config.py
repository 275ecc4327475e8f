"""
Application configuration settings.

All configuration is loaded from environment variables with sensible defaults.
"""
import json
from typing import Any
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Marketchat"
    api_debug: bool = True
    secret_key: str = "dev-secret-key-change-in-production"  # SECURITY: Must be overridden in production via env var

    # JWT Settings (tokens are issued by the auth service, validated here)
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60 * 24  # 24 hours

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000"]

    # Database
    postgres_host: str = "db"
    postgres_port: int = 5432
    postgres_user: str = "marketplace"
    postgres_password: str = "marketplace"
    postgres_db: str = "marketplace"
    database_url: str | None = None

    # Redis notification outbox
    redis_url: str = "redis://redis:6379/0"
    notifications_enabled: bool = False
    notification_queue_key: str = "marketchat:notifications"
    notification_timeout_seconds: float = 5.0

    # Transaction service (empty URL disables the trigger)
    transaction_service_url: str = ""
    transaction_timeout_seconds: float = 10.0

    # Messaging policy
    # Two edit windows exist in the legacy API (5 minutes and 24 hours).
    # Only this one value is enforced until product settles on one.
    message_edit_window_minutes: int = 5
    message_max_length: int = 5000

    # Negotiation policy
    offer_expiry_hours: int = 24  # 0 disables expiry
    max_negotiation_rounds: int = 10  # 0 disables the limit

    # Realtime
    typing_timeout_seconds: float = 10.0

    # Paging defaults
    chat_page_size: int = 20
    message_page_size: int = 50
    search_result_limit: int = 20

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from JSON string or list."""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [v]
        return v

    @property
    def database_url_computed(self) -> str:
        """Compute database URL from components if not explicitly set."""
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def sync_database_url(self) -> str:
        """Synchronous database URL for Alembic migrations."""
        return self.database_url_computed.replace("+asyncpg", "").replace("+aiosqlite", "")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()

    if not settings.api_debug and settings.secret_key == "dev-secret-key-change-in-production":
        import warnings
        warnings.warn(
            "SECURITY WARNING: Using default secret_key in production! "
            "Set SECRET_KEY environment variable to a secure random value.",
            UserWarning
        )

    return settings


settings = get_settings()
