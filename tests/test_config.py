"""
Unit tests for configuration.

Tests:
- Mock mode selection from generator settings
- Placeholder API keys rejected
- Derived polling deadline and URLs
- Platform API key selection
- validate_configuration warnings
"""

import logging

import pytest
from pydantic import ValidationError

from slidegen.config import (
    LEGACY_CREDIT_TABLE,
    GeneratorConfig,
    PollingConfig,
    PurchasesConfig,
    ResilienceConfig,
    Settings,
)


@pytest.fixture
def live_settings() -> Settings:
    """Create settings with a real-looking generator key."""
    return Settings(
        generator=GeneratorConfig(api_key="sk-live-12345"),
        purchases=PurchasesConfig(platform="android", android_api_key="goog_abc"),
    )


def test_mock_mode_without_api_key():
    settings = Settings(generator=GeneratorConfig(api_key=""))

    assert settings.mock_mode is True


def test_mock_mode_flag_overrides_key():
    settings = Settings(generator=GeneratorConfig(api_key="sk-live-12345", mock_mode=True))

    assert settings.mock_mode is True
    assert settings.generator.is_configured is False


def test_missing_generator_key_only_mocks_generator():
    """Test that a missing generator key never simulates credits or purchases."""
    settings = Settings(
        generator=GeneratorConfig(api_key=""),
        purchases=PurchasesConfig(platform="android", android_api_key="goog_abc"),
    )

    assert settings.mock_mode is True
    assert settings.mock_credit is False
    assert settings.mock_purchases is False


def test_mock_toggle_covers_credit_and_purchases():
    settings = Settings(
        generator=GeneratorConfig(api_key="sk-live-12345", mock_mode=True),
        purchases=PurchasesConfig(platform="android", android_api_key="goog_abc"),
    )

    assert settings.mock_credit is True
    assert settings.mock_purchases is True


def test_missing_purchases_key_mocks_purchases(live_settings):
    settings = Settings(generator=live_settings.generator, purchases=PurchasesConfig())

    assert settings.mock_credit is False
    assert settings.mock_purchases is True


def test_live_mode_with_key(live_settings):
    assert live_settings.mock_mode is False
    assert live_settings.generator.is_configured is True


def test_placeholder_api_key_is_dropped():
    """Test that template keys fall back to mock mode."""
    config = GeneratorConfig(api_key="your-api-key-here")

    assert config.api_key == ""


def test_generator_urls():
    config = GeneratorConfig(base_url="https://gen.test/v1/")

    assert config.generate_url == "https://gen.test/v1/presentations/generate"
    assert config.status_url("pres_1") == "https://gen.test/v1/presentations/pres_1"


def test_effective_deadline_defaults_to_polls_times_interval():
    assert PollingConfig(interval_seconds=5.0, max_polls=20).effective_deadline_seconds == 100.0
    assert PollingConfig(deadline_seconds=30.0).effective_deadline_seconds == 30.0


def test_polling_rejects_zero_max_polls():
    with pytest.raises(ValidationError):
        PollingConfig(max_polls=0)


def test_purchases_api_key_follows_platform():
    config = PurchasesConfig(ios_api_key="appl_1", android_api_key="goog_1", platform="ios")

    assert config.api_key == "appl_1"
    assert config.model_copy(update={"platform": "android"}).api_key == "goog_1"


def test_legacy_credit_table_is_copied():
    config = PurchasesConfig()
    config.legacy_credit_table["new_product"] = 7

    assert "new_product" not in LEGACY_CREDIT_TABLE
    assert config.legacy_credit_table["slide_ai_presentation_3days_005"] == 50


def test_resilience_wait_bounds():
    with pytest.raises(ValidationError):
        ResilienceConfig(min_wait_seconds=5.0, max_wait_seconds=1.0)


def test_validate_configuration_mock_mode_warns(caplog):
    settings = Settings(generator=GeneratorConfig(api_key=""), purchases=PurchasesConfig())

    with caplog.at_level(logging.WARNING):
        settings.validate_configuration()

    assert any("mock mode" in record.message for record in caplog.records)
    assert any("Purchases API key not configured" in record.message for record in caplog.records)


def test_validate_configuration_live_is_quiet(live_settings, caplog):
    with caplog.at_level(logging.WARNING):
        live_settings.validate_configuration()

    assert not any("mock mode" in record.message for record in caplog.records)
    assert not any("Purchases API key" in record.message for record in caplog.records)
