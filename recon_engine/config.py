"""
Configuration management using Pydantic Settings.

Service-shell parameters only (logging, retry, review webhook, HTTP server),
loaded from environment variables prefixed with RECON_ and an optional .env
file. Engine thresholds are passed explicitly as config values, see
recon_engine.models.engine_config.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE_PATH = Path(os.environ.get("RECON_ENV_FILE", ".env"))


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RECON_",
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development")
    app_log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Collaborator fetch retry
    fetch_retry_attempts: int = Field(default=3, ge=1)
    fetch_retry_wait_seconds: float = Field(default=1.0, ge=0)
    fetch_retry_max_wait_seconds: float = Field(default=10.0, ge=0)

    # Review queue webhook
    review_webhook_url: Optional[str] = Field(default=None)
    review_webhook_timeout_seconds: float = Field(default=10.0, gt=0)

    # Storage
    reports_dir: Path = Field(default=Path("./data/reports"))

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
