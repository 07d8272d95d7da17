"""Configuration package."""

from .settings import CalendarSyncSettings, get_settings, reset_settings

__all__ = ["CalendarSyncSettings", "get_settings", "reset_settings"]
