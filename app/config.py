"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="WatchPicks", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_timeout_seconds: float = Field(
        default=15.0, alias="TMDB_TIMEOUT", gt=0, le=120
    )

    min_list_size: int = Field(default=10, alias="MIN_LIST_SIZE", ge=1)
    keyword_sample_size: int = Field(
        default=15, alias="KEYWORD_SAMPLE_SIZE", ge=1, le=50
    )
    scoring_concurrency: int = Field(
        default=1, alias="SCORING_CONCURRENCY", ge=1, le=10
    )
    recommendation_ttl_seconds: int = Field(
        default=300, alias="RECOMMENDATION_TTL", ge=0
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./watchpicks.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _parse_log_level(cls, value: object) -> str:
        """Normalise log level names from environment values."""

        if value is None:
            return "INFO"
        level = str(value).strip().upper()
        if not level:
            return "INFO"
        if level == "WARN":
            level = "WARNING"
        if level not in LOG_LEVELS:
            raise ValueError("Unknown log level configured")
        return level

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
