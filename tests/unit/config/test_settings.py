"""Tests for settings loading from defaults, environment and YAML."""

from pathlib import Path
from unittest.mock import patch

import pytest

from calendarsync.config.settings import CalendarSyncSettings, get_settings, reset_settings


@pytest.fixture
def no_config_file():
    with patch.object(CalendarSyncSettings, "_find_config_file", return_value=None):
        yield


@pytest.fixture
def config_file(tmp_path):
    """Point settings at a YAML file written by the test."""
    path = tmp_path / "config.yaml"
    with patch.object(CalendarSyncSettings, "_find_config_file", return_value=path):
        yield path


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ("CALENDARSYNC_MAX_RETRIES", "CALENDARSYNC_LOG_LEVEL", "CALENDARSYNC_EXPANSION_CAP"):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self, no_config_file):
        """Test that sensible defaults are used without any configuration."""
        settings = CalendarSyncSettings()

        assert settings.max_retries == 3
        assert settings.retry_backoff_factor == 1.5
        assert settings.sync_tick_interval == 300
        assert settings.default_sync_interval_minutes == 60
        assert settings.expansion_cap == 100
        assert settings.allow_private_hosts is False
        assert settings.log_level == "INFO"

    def test_database_file(self, no_config_file, tmp_path):
        """Test that the database path joins data_dir and database_name."""
        settings = CalendarSyncSettings(data_dir=tmp_path, database_name="x.db")

        assert settings.database_file == tmp_path / "x.db"

    def test_config_file_path(self, no_config_file, tmp_path):
        """Test that the user config file lives in config_dir."""
        settings = CalendarSyncSettings(config_dir=tmp_path)

        assert settings.config_file == tmp_path / "config.yaml"


class TestEnvironment:
    """Tests for environment variable overrides."""

    def test_env_vars_are_read(self, no_config_file, monkeypatch):
        """Test that CALENDARSYNC_ variables override defaults."""
        monkeypatch.setenv("CALENDARSYNC_MAX_RETRIES", "5")
        monkeypatch.setenv("CALENDARSYNC_LOG_LEVEL", "DEBUG")

        settings = CalendarSyncSettings()

        assert settings.max_retries == 5
        assert settings.log_level == "DEBUG"

    def test_invalid_env_value_is_rejected(self, no_config_file, monkeypatch):
        """Test that validation applies to environment values."""
        monkeypatch.setenv("CALENDARSYNC_EXPANSION_CAP", "0")

        with pytest.raises(ValueError):
            CalendarSyncSettings()


class TestYamlOverlay:
    """Tests for the YAML configuration file."""

    def test_yaml_sections_are_applied(self, config_file):
        """Test that values from each YAML section are loaded."""
        config_file.write_text(
            "http:\n"
            "  max_retries: 1\n"
            "  allow_private_hosts: true\n"
            "sync:\n"
            "  max_concurrent_syncs: 7\n"
            "expansion:\n"
            "  expansion_cap: 25\n"
            "logging:\n"
            "  log_level: WARNING\n"
            "database:\n"
            "  data_dir: ~/calendars\n"
        )

        settings = CalendarSyncSettings()

        assert settings.max_retries == 1
        assert settings.allow_private_hosts is True
        assert settings.max_concurrent_syncs == 7
        assert settings.expansion_cap == 25
        assert settings.log_level == "WARNING"
        assert settings.data_dir == Path("~/calendars").expanduser()

    def test_env_and_explicit_args_win_over_yaml(self, config_file, monkeypatch):
        """Test precedence: explicit arguments and env vars beat the YAML file."""
        config_file.write_text("http:\n  max_retries: 1\nexpansion:\n  expansion_cap: 25\n")
        monkeypatch.setenv("CALENDARSYNC_MAX_RETRIES", "4")

        settings = CalendarSyncSettings(expansion_cap=50)

        assert settings.max_retries == 4
        assert settings.expansion_cap == 50

    def test_unknown_keys_are_ignored(self, config_file):
        """Test that keys outside the known sections are ignored."""
        config_file.write_text("web:\n  port: 8080\nhttp:\n  unknown: 1\n")

        settings = CalendarSyncSettings()

        assert settings.max_retries == 3

    def test_broken_yaml_falls_back_to_defaults(self, config_file):
        """Test that an unreadable file is logged and ignored."""
        config_file.write_text("http: [unclosed\n")

        settings = CalendarSyncSettings()

        assert settings.max_retries == 3

    def test_empty_yaml(self, config_file):
        """Test that an empty file is accepted."""
        config_file.write_text("")

        assert CalendarSyncSettings().max_retries == 3


class TestGlobalSettings:
    """Tests for the process-wide settings instance."""

    def test_get_settings_is_cached(self, no_config_file):
        """Test that get_settings returns the same instance until reset."""
        first = get_settings()

        assert get_settings() is first

        reset_settings()
        assert get_settings() is not first
