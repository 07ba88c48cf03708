"""Centralised configuration for cyberlens (API keys, endpoints & globals). Requires Pydantic v2."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra environment variables
    )

    OTX_API_KEY: str | None = None
    OTX_BASE_URL: str = "https://otx.alienvault.com/api/v1"
    ABUSEIPDB_API_KEY: str | None = None
    ABUSEIPDB_BASE_URL: str = "https://api.abuseipdb.com/api/v2/check"
    LOG_LEVEL: str = "INFO"

    # HTTP client defaults (seconds)
    HTTP_DEFAULT_TIMEOUT: float = Field(default=15.0, gt=0)
    # Per-provider bound enforced by the executor
    PROVIDER_TIMEOUT_MS: int = Field(default=10_000, gt=0)

    # PostgreSQL DSN for lookup history. Unset keeps history in memory.
    HISTORY_DSN: str | None = None


settings = Settings()

__all__ = ["settings", "Settings"]
