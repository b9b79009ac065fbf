"""
Configuration management for the YouTube conversion service.

This module provides configuration settings for the service, including
third-party API credentials, storage locations, worker pool size, and the
timing parameters of the download pipeline.

Uses Pydantic Settings for robust environment variable management with
validation and type safety.
"""

from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Directory layout relative to EXEC_DIR
COMPLETED_DIR = "conversions/completed"
ONGOING_DIR = "conversions/ongoing"


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """
    Configuration settings for the conversion service.

    All settings can be overridden using environment variables.
    Pydantic Settings provides automatic validation and type conversion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Resolution API (RapidAPI) configuration
    rapidapi_key: str = Field(
        default="",
        description="RapidAPI key used to resolve download links",
        alias="RAPIDAPI_KEY"
    )

    rapidapi_host: str = Field(
        default="",
        description="RapidAPI host serving the download_video endpoint",
        alias="RAPIDAPI_HOST"
    )

    # Persistence
    database_url: str = Field(
        default="sqlite:///./conversions.db",
        description="SQLAlchemy database URL for job records",
        alias="DATABASE_URL"
    )

    # Storage
    exec_dir: str = Field(
        default=".",
        description="Base directory holding the conversions/ tree",
        alias="EXEC_DIR"
    )

    # Concurrency configuration
    max_concurrent_workers: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum number of jobs processed at the same time",
        alias="MAX_CONCURRENT_WORKERS"
    )

    max_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum number of admitted (queued or running) jobs",
        alias="MAX_QUEUE_SIZE"
    )

    # Download pipeline timing
    settle_delay_seconds: float = Field(
        default=20.0,
        ge=0,
        le=600,
        description="Wait after resolution before the download link is fetched",
        alias="SETTLE_DELAY_SECONDS"
    )

    download_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of download attempts before a job fails",
        alias="DOWNLOAD_MAX_ATTEMPTS"
    )

    download_backoff_seconds: float = Field(
        default=5.0,
        ge=0,
        le=300,
        description="Backoff unit; attempt N waits N * this value",
        alias="DOWNLOAD_BACKOFF_SECONDS"
    )

    download_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Socket read timeout while streaming a download",
        alias="DOWNLOAD_TIMEOUT_SECONDS"
    )

    resolve_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the resolution API request",
        alias="RESOLVE_TIMEOUT_SECONDS"
    )

    title_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for the oEmbed title lookup",
        alias="TITLE_TIMEOUT_SECONDS"
    )

    ffmpeg_binary: str = Field(
        default="ffmpeg",
        description="FFmpeg executable used for conversions",
        alias="FFMPEG_BINARY"
    )

    # API configuration
    api_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port to expose the API",
        alias="API_PORT"
    )

    api_host: str = Field(
        default="0.0.0.0",
        description="API host address",
        alias="API_HOST"
    )

    # Logging configuration
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
        alias="LOG_LEVEL"
    )

    @field_validator("exec_dir")
    @classmethod
    def validate_exec_dir(cls, v: str) -> str:
        """Treat an empty EXEC_DIR as the current directory."""
        return v or "."

    @property
    def ongoing_dir(self) -> Path:
        """Absolute path of the scratch directory for in-progress downloads."""
        return (Path(self.exec_dir) / ONGOING_DIR).resolve()

    @property
    def completed_dir(self) -> Path:
        """Absolute path of the directory holding finished artifacts."""
        return (Path(self.exec_dir) / COMPLETED_DIR).resolve()

    def ensure_directories(self) -> None:
        """Create the ongoing and completed directories if absent."""
        self.ongoing_dir.mkdir(parents=True, exist_ok=True)
        self.completed_dir.mkdir(parents=True, exist_ok=True)

    def missing_credentials(self) -> list[str]:
        """Names of required resolution settings that are not set."""
        missing = []
        if not self.rapidapi_key:
            missing.append("RAPIDAPI_KEY")
        if not self.rapidapi_host:
            missing.append("RAPIDAPI_HOST")
        return missing

    def display(self) -> str:
        """
        Get a formatted string of all configuration settings.

        The API key itself is never included.

        Returns:
            Formatted configuration string
        """
        return f"""
YouTube Conversion Service Configuration:
=========================================
RapidAPI Host: {self.rapidapi_host or "<unset>"}
RapidAPI Key Set: {bool(self.rapidapi_key)}
Database URL: {self.database_url}
Ongoing Dir: {self.ongoing_dir}
Completed Dir: {self.completed_dir}
Max Concurrent Workers: {self.max_concurrent_workers}
Max Queue Size: {self.max_queue_size}
Settle Delay: {self.settle_delay_seconds} seconds
Download Attempts: {self.download_max_attempts}
FFmpeg Binary: {self.ffmpeg_binary}
API Host: {self.api_host}
API Port: {self.api_port}
Log Level: {self.log_level.value}
"""


# Create a global settings instance
# This will be imported and used throughout the application
settings = Settings()
