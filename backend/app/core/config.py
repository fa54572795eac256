"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        # Look for .env in project root first, then backend/.env
        env_file=[
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ],
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # App metadata
    APP_NAME: str = "Live Trade Service"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/trading.db"

    # Live trade sessions
    LIVE_TRADE_PENDING_TTL_SECONDS: int = 300  # unanswered invites are evicted after this
    LIVE_TRADE_ACTIVE_TTL_SECONDS: int = 0  # 0 disables eviction of active sessions
    LIVE_TRADE_CLEANUP_INTERVAL_SECONDS: int = 60
    LIVE_TRADE_MAX_ITEMS_PER_SIDE: int = 50

    # CORS - accepts comma-separated string or list
    # Use str type and parse in validator to avoid JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"


# Singleton instance
settings = Settings()
