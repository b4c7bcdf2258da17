"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Library preference values for ``DEFAULT_CATEGORY``.
DEFAULT_CATEGORY_ASK = -1
DEFAULT_CATEGORY_NONE = 0


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="shelfhome", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./shelfhome.db", alias="DATABASE_URL"
    )

    source_api_url: HttpUrl | None = Field(default=None, alias="SOURCE_API_URL")
    source_id: int = Field(default=1, alias="SOURCE_ID")
    source_name: str = Field(default="Remote catalog", alias="SOURCE_NAME")
    source_supports_latest: bool = Field(
        default=True, alias="SOURCE_SUPPORTS_LATEST"
    )
    source_supports_home: bool = Field(default=True, alias="SOURCE_SUPPORTS_HOME")
    source_timeout_seconds: float = Field(
        default=20.0, alias="SOURCE_TIMEOUT", gt=0
    )
    source_max_retries: int = Field(
        default=3, alias="SOURCE_MAX_RETRIES", ge=0, le=10
    )
    chapter_page_limit: int = Field(
        default=1_000, alias="CHAPTER_PAGE_LIMIT", ge=1, le=10_000
    )

    section_concurrency: int = Field(
        default=4, alias="SECTION_CONCURRENCY", ge=1, le=32
    )

    default_category_id: int = Field(
        default=DEFAULT_CATEGORY_ASK, alias="DEFAULT_CATEGORY"
    )
    default_chapter_flags: int = Field(
        default=0, alias="DEFAULT_CHAPTER_FLAGS", ge=0
    )
    default_viewer_flags: int = Field(default=0, alias="DEFAULT_VIEWER_FLAGS", ge=0)
    confirm_download_on_add: bool = Field(
        default=False, alias="CONFIRM_DOWNLOAD_ON_ADD"
    )
    cover_cache_dir: Path = Field(
        default=Path("./covers"), alias="COVER_CACHE_DIR"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("default_category_id", mode="before")
    @classmethod
    def _parse_default_category(cls, value: object) -> object:
        """Accept blank values and reject ids below the "always ask" marker."""

        if value is None or value == "":
            return DEFAULT_CATEGORY_ASK
        try:
            category_id = int(str(value).strip())
        except (TypeError, ValueError) as exc:
            raise ValueError("DEFAULT_CATEGORY must be an integer") from exc
        if category_id < DEFAULT_CATEGORY_ASK:
            raise ValueError("DEFAULT_CATEGORY must be -1, 0 or a category id")
        return category_id

    @property
    def always_ask_category(self) -> bool:
        return self.default_category_id == DEFAULT_CATEGORY_ASK

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
