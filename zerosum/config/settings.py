"""
Configuration Management for ZeroSum

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every timing constant the sync layer depends on (notification coalescing
window, scan sweep interval, OCR timeout, retry bound) lives here so tests
can shrink them without monkeypatching module globals.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets document store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the spreadsheet holding the budget collections"
    )
    audit_sheet_name: str = Field(
        default="Audit",
        description="Name of the sheet for the audit log"
    )
    poll_interval_seconds: float = Field(
        default=15.0,
        gt=0,
        description="How often subscriptions re-read the sheets for remote changes"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class GeminiSettings(BaseSettings):
    """Gemini receipt scanner configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    model_name: str = Field(
        default="gemini-2.0-flash",
        description="Gemini model used for receipt extraction"
    )
    max_tokens: int = Field(
        default=512,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )


class SyncSettings(BaseSettings):
    """Mutation framework configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ZEROSUM_SYNC_",
        extra="ignore"
    )

    notification_window_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Failures inside this window are coalesced into one notification"
    )
    toast_ttl_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="How long a notification stays visible"
    )
    pending_log_path: str = Field(
        default=".zerosum/pending_mutations.json",
        description="Where the durable pending-mutation log is written"
    )
    pending_writes_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Upper bound when waiting for in-flight commits"
    )
    prefetch_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Idle delay before adjacent months are subscribed"
    )


class ScanSettings(BaseSettings):
    """Scan queue configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ZEROSUM_SCAN_",
        extra="ignore"
    )

    sweep_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Interval between automatic queue sweeps"
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Failed scans are retried automatically until this many attempts"
    )
    timeout_seconds: float = Field(
        default=25.0,
        gt=0.0,
        description="Hard timeout raced against each OCR call"
    )
    image_cache_dir: str = Field(
        default=".zerosum/receipts",
        description="Directory holding receipt images awaiting OCR"
    )
    max_candidate_categories: int = Field(
        default=50,
        ge=1,
        le=200,
        description="Cap on category names sent to the OCR service"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Log at DEBUG level"
    )
    log_json: bool = Field(
        default=True,
        description="Render logs as JSON lines instead of console output"
    )

    user_id: str = Field(
        default="local",
        description="Owner of the budget collections"
    )
    month_view_cache_size: int = Field(
        default=12,
        ge=1,
        le=120,
        description="Capacity of the per-month ledger view cache"
    )
    max_transaction_amount: float = Field(
        default=10_000_000.0,
        description="Largest absolute amount accepted on a transaction"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Loaded lazily so a missing Sheets or Gemini key only fails
    # the component that needs it.

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def scan(self) -> ScanSettings:
        return ScanSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, with an extra
    "<name>_error" entry for every section that failed.
    """
    results = {}
    settings = get_settings()

    for name in ("google_sheets", "gemini", "sync", "scan", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
