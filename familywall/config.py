"""Centralized configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application-wide settings sourced from .env / environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────
    familywall_env: str = "development"
    familywall_log_level: str = "INFO"

    # ── API Server ───────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Database ─────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///data/familywall.db"

    # ── Calendar sync ────────────────────────────────────────────────
    calendar_cache_ttl_minutes: int = Field(default=15, ge=1)
    calendar_min_interval_minutes: int = Field(default=5, ge=1)
    calendar_startup_delay_seconds: float = Field(default=5.0, ge=0)
    calendar_error_retry_minutes: int = Field(default=5, ge=1)
    calendar_fetch_timeout_seconds: float = Field(default=60.0, gt=0)
    calendar_past_days: int = Field(default=30, ge=0)
    calendar_allow_empty_purge: bool = True

    # ── Microsoft Graph ──────────────────────────────────────────────
    msgraph_base_url: str = "https://graph.microsoft.com/v1.0"
    msgraph_access_token: str = ""

    # ── ICS feeds ────────────────────────────────────────────────────
    ics_feed_urls: str = ""

    @field_validator("familywall_log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    # ── Derived ──────────────────────────────────────────────────────
    @property
    def data_dir(self) -> Path:
        """Return the data directory, creating it if needed."""
        path = Path("data")
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def ics_feeds(self) -> list[str]:
        """Parse comma-separated ICS feed URLs."""
        if not self.ics_feed_urls:
            return []
        return [url.strip() for url in self.ics_feed_urls.split(",") if url.strip()]

    @property
    def is_sqlite(self) -> bool:
        """Whether the cache lives in a single-writer SQLite database."""
        return self.database_url.startswith("sqlite")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
