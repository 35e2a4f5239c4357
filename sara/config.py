"""
Configuration module for SARA.

Uses pydantic-settings to load configuration from environment variables so
quotas, cache bounds and storage can be tuned without code changes.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    All settings can be set with the ``SARA_`` prefix (e.g. ``SARA_LLM_CEILING``)
    or, where an alias is declared, by the alias (e.g. ``HOST``, ``OPEN_AI_API_KEY``).

    Environment Variables:
        HOST: Server host (default: 0.0.0.0)
        PORT: Server port (default: 8000)
        LOG_LEVEL: Logging level (default: info)
        STORAGE_BACKEND: Durable store for quota, cache and history records.
            One of "sqlite", "memory", "redis" (default: sqlite)
        DATABASE_PATH: SQLite file path, relative paths resolve against the
            project directory (default: sara.db)
        REDIS_URL: Redis URL, required when STORAGE_BACKEND=redis
        LLM_CEILING: LLM requests allowed per rolling window (default: 50)
        LLM_WINDOW_HOURS: Rolling window length in hours (default: 24)
        TRANSCRIPT_CEILING: Transcript quota units per UTC day (default: 100)
        TRANSCRIPT_RESET_HOUR / TRANSCRIPT_RESET_MINUTE: UTC time of the daily
            transcript quota reset (default: 00:00)
        CACHE_MAX_ENTRIES: Maximum cached results (default: 50)
        CACHE_TTL_DAYS: Default cache entry lifetime (default: 7)
        HISTORY_MAX_ENTRIES: Maximum reading history entries (default: 50)
        OPEN_AI_API_KEY: API key for the LLM provider
        OPENAI_MODEL: Chat completion model (default: gpt-3.5-turbo)
    """

    # ========== Server Configuration ==========

    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    log_level: str = Field(default="info", alias="LOG_LEVEL")

    # ========== Storage Settings ==========

    storage_backend: Literal["sqlite", "memory", "redis"] = "sqlite"
    database_path: str = "sara.db"
    redis_url: str | None = None

    # ========== Quota Settings ==========

    # LLM provider: rolling window measured from the first request after a reset
    llm_ceiling: int = Field(default=50, gt=0)
    llm_window_hours: int = Field(default=24, gt=0)

    # Transcript source: calendar-aligned daily reset in UTC
    transcript_ceiling: int = Field(default=100, gt=0)
    transcript_reset_hour: int = Field(default=0, ge=0, le=23)
    transcript_reset_minute: int = Field(default=0, ge=0, le=59)

    # ========== Cache & History Settings ==========

    cache_max_entries: int = Field(default=50, gt=0)
    cache_ttl_days: int = Field(default=7, gt=0)
    history_max_entries: int = Field(default=50, gt=0)

    # ========== Collaborator Settings ==========

    openai_api_key: str | None = Field(default=None, alias="OPEN_AI_API_KEY")
    openai_model: str = "gpt-3.5-turbo"
    openai_timeout: float = 60.0

    # Browser impersonation target for TLS fingerprint matching
    ytdlp_impersonate_target: str = "chrome"

    # Sleep between subtitle requests; raise it if YouTube starts answering 429
    ytdlp_sleep_seconds: int = 0

    # Temporary directory for caption downloads (auto-cleaned after each request)
    ytdlp_temp_dir: str | None = None
    ytdlp_request_timeout: int = 120

    # ========== Security Settings ==========

    enable_security_headers: bool = True

    model_config = SettingsConfigDict(
        env_prefix="SARA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


# Loaded once at import; components receive values explicitly from the lifespan
settings = Settings()
