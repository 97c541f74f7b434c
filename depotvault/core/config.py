"""Configuration management for depotvault."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger()


class CatalogConfig(BaseModel):
    """Remote catalog configuration."""

    app_id: str = Field(default="3164500", description="Product (app) ID in the catalog")
    base_url: str = Field(
        default="https://api.steamcmd.net/v1",
        description="Base URL of the product-info endpoint"
    )
    timeout: float = Field(
        default=30.0,
        description="Upper bound in seconds for connect and login operations"
    )
    max_reconnect_attempts: int = Field(default=5, description="Maximum reconnect attempts")
    reconnect_base_delay: float = Field(default=1.0, description="Base reconnect backoff in seconds")
    reconnect_max_delay: float = Field(default=60.0, description="Reconnect backoff ceiling in seconds")
    cache_ttl: float = Field(
        default=300.0,  # 5 minutes
        description="Build ID cache time to live in seconds"
    )
    refresh_threshold: float = Field(
        default=0.8,
        description="Fraction of the TTL after which a background refresh starts"
    )
    primary_depot_ids: list[str] = Field(
        default=["3164501"],
        description="Depots preferred when picking a primary manifest"
    )

    @field_validator("app_id")
    @classmethod
    def validate_app_id(cls, v: str) -> str:
        """Validate app ID."""
        if not v.isdigit() or len(v) > 10:
            raise ValueError(f"Invalid app ID: {v}")
        return v

    @field_validator("timeout", "reconnect_max_delay", "cache_ttl")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate positive durations."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator("max_reconnect_attempts")
    @classmethod
    def validate_max_reconnect_attempts(cls, v: int) -> int:
        """Validate reconnect attempts."""
        if v < 1:
            raise ValueError("Reconnect attempts must be at least 1")
        return v

    @field_validator("refresh_threshold")
    @classmethod
    def validate_refresh_threshold(cls, v: float) -> float:
        """Validate refresh threshold."""
        if not 0 < v <= 1:
            raise ValueError("Refresh threshold must be in (0, 1]")
        return v


class DownloaderConfig(BaseModel):
    """External downloader configuration."""

    executable: Path | None = Field(
        default=None,
        description="Downloader executable, searched on PATH when unset"
    )
    executable_names: list[str] = Field(
        default=["DepotDownloader", "depotdownloader", "DepotDownloader.exe"],
        description="Names tried on PATH when no executable is configured"
    )
    max_downloads: int = Field(default=8, description="Concurrent chunk downloads per depot")
    max_attempts: int = Field(default=3, description="Maximum attempts per depot and preflight")
    backoff_schedule: list[float] = Field(
        default=[0.0, 5.0, 15.0],
        description="Wait in seconds before each attempt"
    )
    flush_interval: float = Field(
        default=0.05,
        description="Progress coalescing window in seconds"
    )
    login_timeout: float = Field(
        default=30.0, description="Upper bound in seconds for a login test and for an answered login prompt"
    )
    version_timeout: float = Field(default=10.0, description="Timeout for the --version check")
    conflict_process_names: list[str] = Field(
        default=["steam", "steam.exe", "steamwebhelper", "steamwebhelper.exe"],
        description="Client processes that lock the account while running"
    )

    @field_validator("max_downloads", "max_attempts")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate positive counts."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("backoff_schedule")
    @classmethod
    def validate_backoff_schedule(cls, v: list[float]) -> list[float]:
        """Validate backoff schedule."""
        if not v:
            raise ValueError("Backoff schedule cannot be empty")
        if any(delay < 0 for delay in v):
            raise ValueError("Backoff delays must be non-negative")
        return v

    @field_validator("flush_interval", "login_timeout", "version_timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate positive durations."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    def backoff_for(self, attempt: int) -> float:
        """Wait before the given zero-based attempt; the last entry repeats."""
        schedule = self.backoff_schedule
        return schedule[min(attempt, len(schedule) - 1)]


class AppConfig(BaseModel):
    """Application configuration."""

    # Directory settings
    config_dir: Path = Field(
        default=Path.home() / ".config" / "depotvault",
        description="Configuration directory"
    )
    data_dir: Path = Field(
        default=Path.home() / ".local" / "share" / "depotvault",
        description="Data directory"
    )
    managed_root: Path | None = Field(
        default=None,
        description="Managed environment root, defaults to <data_dir>/environment"
    )
    store_file: Path | None = Field(
        default=None,
        description="Version store file, defaults to <config_dir>/store.json"
    )

    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    downloader: DownloaderConfig = Field(default_factory=DownloaderConfig)

    # Output settings
    output_format: str = Field(
        default="rich",
        description="Output format (rich, json, plain)"
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    def model_post_init(self, __context) -> None:
        """Ensure directories exist."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        """Resolved managed root."""
        return self.managed_root or self.data_dir / "environment"

    @property
    def store_path(self) -> Path:
        """Resolved version store file."""
        return self.store_file or self.config_dir / "store.json"

    @classmethod
    def load(cls, config_file: Path | None = None) -> AppConfig:
        """Load configuration from file.

        Args:
            config_file: Path to config file, uses default if None

        Returns:
            Application configuration
        """
        if config_file is None:
            config_file = Path.home() / ".config" / "depotvault" / "config.json"

        if config_file.exists():
            with open(config_file) as f:
                data = json.load(f)
                return cls(**data)

        # Return defaults
        return cls()

    def save(self, config_file: Path | None = None) -> None:
        """Save configuration to file.

        Args:
            config_file: Path to config file, uses default if None
        """
        if config_file is None:
            config_file = self.config_dir / "config.json"

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, default=str)

        logger.info("config_saved", path=str(config_file))

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate output format."""
        valid_formats = {"rich", "json", "plain"}
        if v not in valid_formats:
            raise ValueError(f"Invalid output format: {v}. Valid formats: {valid_formats}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Valid levels: {valid_levels}")
        return v
