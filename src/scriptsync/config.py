"""Configuration using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "scriptsync"

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Scopes requested during authorization
SCOPES = [
    "https://www.googleapis.com/auth/script.projects",
    "https://www.googleapis.com/auth/script.deployments",
    "https://www.googleapis.com/auth/script.processes",
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
]


class Settings(BaseSettings):
    """Settings loaded from SCRIPTSYNC_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SCRIPTSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    config_dir: Path = DEFAULT_CONFIG_DIR
    refresh_skew_seconds: int = 60
    http_timeout: float = 60.0

    log_level: str = "INFO"
    json_logs: bool = False

    auth_uri: str = GOOGLE_AUTH_URI
    token_uri: str = GOOGLE_TOKEN_URI

    @property
    def default_token_path(self) -> Path:
        """Token location used when config.json does not name one."""
        return self.config_dir / "tokens.json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
