from functools import lru_cache
from typing import List, Optional

from pydantic import HttpUrl, SecretStr
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    openrouter_api_key: Optional[SecretStr] = None
    openrouter_base_url: HttpUrl = "https://openrouter.ai/api/v1"  # type: ignore[assignment]
    app_url: str = "https://localhost"
    app_title: str = "Brand Monitor"

    # Comma separated provider ids, e.g. "openai,google,anthropic"
    enabled_providers: str = "openai,google"

    provider_timeout_seconds: float = 60.0
    max_concurrency: int = 8
    provider_max_concurrency: Optional[int] = None

    cors_origins: str = "*"

    class Config:
        env_prefix = ""
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def enabled_provider_ids(self) -> List[str]:
        return [
            item.strip().lower()
            for item in self.enabled_providers.split(",")
            if item.strip()
        ]

    @property
    def cors_origin_list(self) -> List[str]:
        return [item.strip() for item in self.cors_origins.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    return Settings()
