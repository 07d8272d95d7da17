"""Settings management using Pydantic for type validation and configuration."""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, PrivateAttr
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CALENDARSYNC_"

# YAML section -> settings fields it may populate
YAML_SECTIONS: dict[str, tuple[str, ...]] = {
    "http": (
        "request_timeout",
        "max_retries",
        "retry_backoff_factor",
        "max_feed_bytes",
        "allow_private_hosts",
    ),
    "sync": (
        "sync_tick_interval",
        "sync_cycle_timeout",
        "max_concurrent_syncs",
        "default_sync_interval_minutes",
        "default_color",
    ),
    "expansion": ("expansion_cap", "expansion_cache_ttl", "expansion_cache_size"),
    "logging": ("log_level", "log_file"),
    "database": ("data_dir", "database_name"),
}


class CalendarSyncSettings(BaseSettings):
    """Application settings with environment variable and YAML support."""

    _explicit_args: set = PrivateAttr(default_factory=set)
    _env_vars_set: set = PrivateAttr(default_factory=set)

    # Application
    app_name: str = Field(default="CalendarSync", description="Application name")
    config_dir: Path = Field(default_factory=lambda: Path.home() / ".config" / "calendarsync")
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".local" / "share" / "calendarsync"
    )
    database_name: str = Field(default="calendarsync.db", description="SQLite database file name")

    # Feed fetching
    request_timeout: int = Field(default=30, description="HTTP request timeout in seconds")
    max_retries: int = Field(default=3, ge=0, description="Maximum retry attempts")
    retry_backoff_factor: float = Field(default=1.5, description="Exponential backoff factor")
    max_feed_bytes: int = Field(
        default=50 * 1024 * 1024, gt=0, description="Largest accepted feed body in bytes"
    )
    allow_private_hosts: bool = Field(
        default=False, description="Allow feeds on private, loopback or link-local hosts"
    )

    # Sync scheduling
    sync_tick_interval: int = Field(
        default=300, gt=0, description="Seconds between scheduler scans (5 minutes)"
    )
    sync_cycle_timeout: float = Field(
        default=120.0, gt=0, description="Upper bound in seconds for one fetch/parse/reconcile cycle"
    )
    max_concurrent_syncs: int = Field(
        default=3, gt=0, description="Subscriptions synced concurrently per scan"
    )
    default_sync_interval_minutes: int = Field(
        default=60, gt=0, description="Sync interval for new subscriptions"
    )
    default_color: str = Field(default="#3b82f6", description="Color for new events")

    # Recurrence expansion
    expansion_cap: int = Field(default=100, gt=0, description="Occurrences per master per window")
    expansion_cache_ttl: int = Field(default=300, ge=0, description="Expansion cache TTL in seconds")
    expansion_cache_size: int = Field(default=512, ge=0, description="Expansion cache entries")

    # Logging
    log_level: str = Field(default="INFO", description="Console/file log level")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def __init__(self, **kwargs: Any) -> None:
        env_vars_set = {
            key[len(ENV_PREFIX) :].lower() for key in os.environ if key.startswith(ENV_PREFIX)
        }

        super().__init__(**kwargs)

        self._explicit_args = set(kwargs.keys())
        self._env_vars_set = env_vars_set
        self._load_yaml_config()

    def _find_config_file(self) -> Optional[Path]:
        """Find config file, checking project directory first, then user home."""
        project_config = Path(__file__).parent.parent.parent / "config" / "config.yaml"
        if project_config.exists():
            return project_config

        user_config = self.config_dir / "config.yaml"
        if user_config.exists():
            return user_config

        return None

    def _apply_section(self, section: dict[str, Any], fields: tuple[str, ...]) -> None:
        """Apply one YAML section; explicit arguments and environment variables win."""
        for setting in fields:
            if (
                setting in section
                and setting not in self._explicit_args
                and setting not in self._env_vars_set
            ):
                value = section[setting]
                if setting == "data_dir":
                    value = Path(value).expanduser()
                setattr(self, setting, value)

    def _load_yaml_config(self) -> None:
        """Load configuration from YAML file if it exists."""
        config_file = self._find_config_file()
        if not config_file:
            return

        try:
            with config_file.open() as f:
                config_data = yaml.safe_load(f)

            if not config_data:
                return

            for section_name, fields in YAML_SECTIONS.items():
                section = config_data.get(section_name)
                if isinstance(section, dict):
                    self._apply_section(section, fields)

        except (OSError, yaml.YAMLError) as e:
            # Fall back to defaults/env vars
            logging.getLogger(__name__).warning(
                f"Could not load YAML config from {config_file}: {e}"
            )

    @property
    def database_file(self) -> Path:
        """Path to SQLite database file."""
        return self.data_dir / self.database_name

    @property
    def config_file(self) -> Path:
        """Path to YAML configuration file."""
        return self.config_dir / "config.yaml"


_settings_instance: Optional[CalendarSyncSettings] = None


def get_settings() -> CalendarSyncSettings:
    """Get the global settings instance, creating it lazily if needed.

    Returns:
        CalendarSyncSettings: The global settings instance
    """
    if globals()["_settings_instance"] is None:
        globals()["_settings_instance"] = CalendarSyncSettings()
    return globals()["_settings_instance"]


def reset_settings() -> None:
    """Reset the global settings instance (primarily for testing)."""
    globals()["_settings_instance"] = None
