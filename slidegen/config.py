"""
Configuration management for the slidegen service layer.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Credit amounts for product identifiers that predate the
# "<N>_presentations" naming convention.
LEGACY_CREDIT_TABLE: dict[str, int] = {
    "slides_ai_presentation_pro_monthly_0003": 1,
    "slides_ai_presentation_basic_monthly_0002": 5,
    "slides_ai_presentation_pro_weekly_0006": 10,
    "slides_ai_presentation_basic_weekly_0004": 20,
    "slide_ai_presentation_3days_005": 50,
}

_PLACEHOLDER_PATTERNS = ("your-api-key-here", "your_api_key_here", "example", "dummy")


def _is_placeholder(value: str) -> bool:
    v_lower = value.lower()
    return any(pattern in v_lower for pattern in _PLACEHOLDER_PATTERNS)


class GeneratorConfig(BaseSettings):
    """External presentation generator (job submission + status) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GENERATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    base_url: str = Field(
        default="https://api.slidesgpt.com/v1",
        description="Generator API base URL",
    )
    api_key: str = Field(default="", description="Bearer API key for the generator")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    # Deterministic offline implementation of submit/status, credit and purchases
    mock_mode: bool = Field(
        default=False,
        description="Use mock submit/status, credit and purchase implementations (offline testing)",
    )
    mock_submit_delay_seconds: float = Field(default=2.0, ge=0.0, le=10.0)
    mock_status_delay_seconds: float = Field(default=1.0, ge=0.0, le=10.0)
    mock_slide_count: int = Field(default=5, ge=1, le=100)

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """Reject placeholder keys. Never echo the key itself."""
        if not v:
            return ""
        if _is_placeholder(v):
            logging.warning("generator api_key appears to be a placeholder - mock mode will be used")
            return ""
        return v

    @property
    def is_configured(self) -> bool:
        """True when real API calls can be made."""
        return bool(self.api_key) and not self.mock_mode

    @property
    def generate_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/presentations/generate"

    def status_url(self, job_id: str) -> str:
        return f"{self.base_url.rstrip('/')}/presentations/{job_id}"


class PollingConfig(BaseSettings):
    """Job status polling configuration."""

    model_config = SettingsConfigDict(env_prefix="POLLING_")

    interval_seconds: float = Field(default=5.0, ge=0.0, le=300.0)
    max_polls: int = Field(
        default=20,
        ge=1,
        le=1000,
        description="Ceiling on non-transient status responses before timing out",
    )
    deadline_seconds: float | None = Field(
        default=None,
        ge=0.0,
        description="Wall-clock deadline for polling (None = max_polls * interval_seconds)",
    )
    interval_jitter_seconds: float = Field(
        default=0.0,
        ge=0.0,
        le=60.0,
        description="Random extra delay added to each poll interval",
    )
    progress_tick_seconds: float = Field(default=0.4, ge=0.0, le=10.0)

    @property
    def effective_deadline_seconds(self) -> float:
        if self.deadline_seconds is not None:
            return self.deadline_seconds
        return self.max_polls * self.interval_seconds


class LedgerConfig(BaseSettings):
    """Token ledger storage and credit endpoint configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    db_path: str = Field(default="./data/ledger.db", description="SQLite ledger store path")
    credit_url: str = Field(
        default="https://addtokens-arlkyu6kda-uc.a.run.app",
        description="Authenticated token credit endpoint",
    )
    credit_timeout_seconds: float = Field(default=15.0, ge=1.0, le=120.0)

    # Balance granted on first sight of a user
    default_free_units: int = Field(default=1, ge=0)
    default_premium_units: int = Field(default=0, ge=0)


class PurchasesConfig(BaseSettings):
    """Purchase provider (RevenueCat) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PURCHASES_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    platform: Literal["ios", "android"] = Field(default="android")
    ios_api_key: str = Field(default="")
    android_api_key: str = Field(default="")
    api_base_url: str = Field(default="https://api.revenuecat.com")
    timeout_seconds: float = Field(default=15.0, ge=1.0, le=120.0)
    pro_entitlement_id: str = Field(default="pro_access")
    legacy_credit_table: dict[str, int] = Field(
        default_factory=lambda: dict(LEGACY_CREDIT_TABLE),
        description="Creditable units for legacy product identifiers",
    )
    package_id_mapping: dict[str, str] = Field(
        default_factory=dict,
        description="Plan identifier -> offering package identifier (e.g. $rc_monthly)",
    )

    @property
    def api_key(self) -> str:
        """API key for the configured platform."""
        return self.ios_api_key if self.platform == "ios" else self.android_api_key


class ResilienceConfig(BaseSettings):
    """Retry configuration for external dependencies."""

    model_config = SettingsConfigDict(env_prefix="RESILIENCE_")

    max_attempts: int = Field(default=3, ge=1, le=10)
    min_wait_seconds: float = Field(default=0.5, ge=0.0, le=60.0)
    max_wait_seconds: float = Field(default=8.0, ge=0.0, le=300.0)

    @field_validator("max_wait_seconds")
    @classmethod
    def validate_wait_bounds(cls, v: float, info) -> float:
        min_wait = info.data.get("min_wait_seconds")
        if min_wait is not None and v < min_wait:
            raise ValueError(f"max_wait_seconds ({v}) must be >= min_wait_seconds ({min_wait})")
        return v


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    # Service metadata (injected into all logs)
    service_name: str = Field(default="slidegen", description="Service name for log aggregation")
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    generator: GeneratorConfig = Field(default_factory=GeneratorConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    purchases: PurchasesConfig = Field(default_factory=PurchasesConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def mock_mode(self) -> bool:
        """Generator submit/status are mocked when requested or when no key is usable."""
        return self.generator.mock_mode or not self.generator.api_key

    @property
    def mock_credit(self) -> bool:
        """Credits are only simulated on the explicit toggle, never for a missing key."""
        return self.generator.mock_mode

    @property
    def mock_purchases(self) -> bool:
        """Purchases are mocked on the explicit toggle or without a platform key."""
        return self.generator.mock_mode or not self.purchases.api_key

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if self.mock_credit:
            logging.warning(
                "Mock mode enabled - submit/status, credit and purchase calls are simulated"
            )
        elif self.mock_mode:
            logging.warning(
                "Generator API key not configured - mock mode for submit/status only"
            )

        if not self.purchases.api_key:
            logging.warning(
                f"Purchases API key not configured for platform {self.purchases.platform} "
                "- entitlement refresh will fail open"
            )

        if self.polling.effective_deadline_seconds < self.polling.interval_seconds:
            logging.warning(
                f"Polling deadline ({self.polling.effective_deadline_seconds}s) is shorter "
                f"than the poll interval ({self.polling.interval_seconds}s)"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
