"""
Application Configuration

Settings class using pydantic-settings for environment variable loading.
Defines filesystem roots, encoder binaries, timeouts and resource limits.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For example, FFMPEG_PATH can be set to point at a non-PATH binary.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="SongVideo API", description="Application name")
    debug: bool = Field(default=False, description="Debug mode")
    version: str = Field(default="0.1.0", description="API version")

    # Security
    secret_key: str = Field(
        default="change-me-in-production-min-32-chars",
        description="Secret key for JWT signing (min 32 characters)",
    )
    access_token_expire_hours: int = Field(
        default=24,
        description="Access token expiration time in hours",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./songvideo.db",
        description="Database connection URL",
    )
    sql_echo: bool = Field(default=False, description="Echo SQL statements")

    # Storage
    public_path: str = Field(
        default="./public",
        description="Public asset root; holds audio/, images/ and videos/",
    )
    work_path: str = Field(
        default="./tmp/renders",
        description="Root for per-project render working directories",
    )

    # Encoder
    ffmpeg_path: str = Field(default="ffmpeg", description="FFmpeg binary")
    ffprobe_path: str = Field(default="ffprobe", description="FFprobe binary")
    font_path: Optional[str] = Field(
        default=None,
        description="Font file for text overlays (platform default when unset)",
    )

    # Timeouts (seconds)
    encoder_check_timeout: float = Field(
        default=5.0,
        description="Timeout for the `ffmpeg -version` availability check",
    )
    probe_timeout: float = Field(
        default=10.0,
        description="Timeout for reading audio duration with ffprobe",
    )
    download_timeout: float = Field(
        default=60.0,
        description="Timeout for downloading remote audio and artwork",
    )
    encode_timeout: Optional[float] = Field(
        default=None,
        description="Optional hard limit for one encode (unbounded when unset)",
    )

    # Render job behaviour
    progress_update_interval: float = Field(
        default=0.5,
        description="Minimum seconds between persisted encoding progress writes",
    )
    error_message_max_length: int = Field(
        default=500,
        description="Stored failure messages are truncated to this many characters",
    )

    # Resource Limits
    max_upload_size: int = Field(
        default=500 * 1024 * 1024,  # 500MB
        description="Maximum upload file size in bytes (default: 500MB)",
    )

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string to list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def public_root(self) -> Path:
        return Path(self.public_path).resolve()

    @property
    def work_root(self) -> Path:
        return Path(self.work_path).resolve()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings instance.

    Uses lru_cache to ensure settings are only loaded once per process.

    Returns:
        Settings: Application settings instance

    Example:
        >>> settings = get_settings()
        >>> print(settings.probe_timeout)
        10.0
    """
    return Settings()
