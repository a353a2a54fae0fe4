"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


SORT_KEYS: tuple[str, ...] = ("created", "title", "rating", "year")
DEFAULT_CLIENT_SORT_KEYS: tuple[str, ...] = ("title", "year")


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Catalogy", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=8000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./catalogy.db", alias="DATABASE_URL"
    )

    page_size: int = Field(default=20, alias="PAGE_SIZE", ge=1, le=200)
    client_sort_batch_size: int = Field(
        default=500, alias="CLIENT_SORT_BATCH_SIZE", ge=1, le=5_000
    )
    client_sort_keys: Annotated[tuple[str, ...], NoDecode] = Field(
        default=DEFAULT_CLIENT_SORT_KEYS, alias="CLIENT_SORT_KEYS"
    )
    min_year: int = Field(default=1950, alias="MIN_YEAR", ge=1800, le=2100)
    browse_session_idle_minutes: int = Field(
        default=30, alias="BROWSE_SESSION_IDLE_MINUTES", ge=1, le=24 * 60
    )
    browse_sessions_per_viewer: int = Field(
        default=8, alias="BROWSE_SESSIONS_PER_VIEWER", ge=1, le=100
    )

    invite_ttl_days: int = Field(default=7, alias="INVITE_TTL_DAYS", ge=1, le=365)
    invite_max_uses: int = Field(default=1, alias="INVITE_MAX_USES", ge=1, le=1_000)

    recommendation_daily_limit: int = Field(
        default=30, alias="RECOMMENDATION_DAILY_LIMIT", ge=1, le=10_000
    )
    recommendation_comment_limit: int = Field(
        default=280, alias="RECOMMENDATION_COMMENT_LIMIT", ge=1, le=5_000
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_read_access_token: str | None = Field(
        default=None, alias="TMDB_READ_ACCESS_TOKEN"
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_language: str = Field(default="en-US", alias="TMDB_LANGUAGE")

    rawg_api_key: str | None = Field(default=None, alias="RAWG_API_KEY")
    rawg_api_url: HttpUrl = Field(
        default="https://api.rawg.io/api", alias="RAWG_API_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("client_sort_keys", mode="before")
    @classmethod
    def _parse_client_sort_keys(cls, value: object) -> tuple[str, ...]:
        """Normalise the sort keys that fall back to in-memory ordering."""

        if value is None:
            return DEFAULT_CLIENT_SORT_KEYS
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("CLIENT_SORT_KEYS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            key = entry.lower()
            if not key:
                continue
            if key == "none":
                return ()
            if key not in SORT_KEYS:
                raise ValueError("Unknown sort keys configured")
            if key not in cleaned:
                cleaned.append(key)
        if not cleaned:
            return DEFAULT_CLIENT_SORT_KEYS
        return tuple(cleaned)

    @model_validator(mode="after")
    def _check_batch_size(self) -> "Settings":
        """Client-side sorting batches must hold at least one full page."""

        if self.client_sort_batch_size < self.page_size:
            raise ValueError(
                "CLIENT_SORT_BATCH_SIZE must not be smaller than PAGE_SIZE"
            )
        return self

    @property
    def tmdb_enabled(self) -> bool:
        return bool(self.tmdb_api_key or self.tmdb_read_access_token)

    @property
    def rawg_enabled(self) -> bool:
        return bool(self.rawg_api_key)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
