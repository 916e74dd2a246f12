"""Configuration package."""

from zerosum.config.settings import (
    AppSettings,
    GeminiSettings,
    GoogleSheetsSettings,
    ScanSettings,
    Settings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "GeminiSettings",
    "GoogleSheetsSettings",
    "ScanSettings",
    "Settings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
