"""Application configuration using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from unisearch import __version__


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="UNISEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "unisearch"
    version: str = __version__
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Local API consumed by the launcher UI
    host: str = "127.0.0.1"
    port: int = Field(default=4317, description="Local API port")

    # Paths
    config_path: Path = Field(
        default=Path.home() / ".config" / "unisearch",
        description="Directory holding the index database and key file",
    )
    database_url: str | None = Field(
        default=None,
        description="Override for the index database URL",
    )

    # Google OAuth (installed-app client)
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_auth_uri: str = "https://accounts.google.com/o/oauth2/v2/auth"
    google_token_uri: str = "https://oauth2.googleapis.com/token"
    google_revoke_uri: str = "https://oauth2.googleapis.com/revoke"
    google_scopes: list[str] = Field(
        default=["https://www.googleapis.com/auth/drive.metadata.readonly"],
    )
    oauth_callback_timeout: float = Field(
        default=120.0,
        description="Seconds to wait for the browser to hit the loopback callback",
    )
    token_expiry_margin: float = Field(
        default=30.0,
        description="Refresh access tokens this many seconds before they expire",
    )
    credential_backend: Literal["auto", "keyring", "database"] = Field(
        default="auto",
        description=(
            "Where the OAuth credential is kept: the OS keyring, the encrypted "
            "database slot, or the keyring when one is available"
        ),
    )
    encryption_key: str | None = Field(
        default=None,
        description="Fernet key for the database credential slot; a key file is created when unset",
    )

    # Drive API
    drive_api_base: str = "https://www.googleapis.com/drive/v3"
    http_timeout: float = Field(default=30.0, description="Timeout for outbound HTTP calls")

    # Indexer
    index_page_size: int = Field(default=1000, ge=1, le=1000)
    poll_interval: float = Field(
        default=30.0,
        ge=5,
        le=3600,
        description="Seconds between incremental change polls",
    )
    crawl_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts per crawl page before the crawl moves to error",
    )
    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 60.0
    retry_fixed_delay: float = 0.5
    page_delay: float = Field(default=0.05, description="Pause between crawl pages")

    # Search
    search_root: Path = Field(default_factory=Path.home)
    local_search_timeout: float = 5.0
    provider_timeout: float = 5.0
    cache_ttl_seconds: float = 30.0
    cache_max_entries: int = 500

    @property
    def google_oauth_configured(self) -> bool:
        """Check if Google OAuth client credentials are configured."""
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def db_path(self) -> Path:
        """Get the SQLite database file path."""
        return self.config_path / "unisearch.db"

    @property
    def key_path(self) -> Path:
        """Get the credential-store key file path."""
        return self.config_path / "credentials.key"

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.db_path}"


@lru_cache
def get_settings() -> Settings:
    """Return settings built from the environment (cached)."""
    return Settings()
