"""
Unit tests for Pydantic Settings configuration.

Tests settings loading and validation.
"""

import pytest
from pydantic import ValidationError

from app.config.settings import Settings


class TestSettings:
    """Tests for Settings configuration."""

    def test_settings_loads_from_env(self):
        """Settings should load from environment variables."""
        from app.config.settings import settings

        assert settings.cardcom_terminal_number == 1000
        assert settings.cardcom_api_name == "test-api-name"
        assert settings.admin_api_key == "test-admin-key"

    def test_settings_has_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.session_ttl_minutes == 30
        assert settings.grace_period_days == 7
        assert settings.trial_days == 30
        assert settings.status_poll_interval_seconds == 5
        assert settings.cardcom_iso_coin_id == 1
        assert settings.reconcile_max_attempts >= 1

    def test_is_production_property(self):
        settings = Settings(_env_file=None)

        assert settings.is_production is False
        assert settings.is_development is False  # ENVIRONMENT=testing

    def test_production_requires_cardcom_credentials(self, monkeypatch):
        monkeypatch.delenv("CARDCOM_TERMINAL_NUMBER", raising=False)
        monkeypatch.delenv("CARDCOM_API_NAME", raising=False)

        with pytest.raises(ValidationError) as exc_info:
            Settings(environment="production", _env_file=None)
        assert "CARDCOM_TERMINAL_NUMBER" in str(exc_info.value)

    def test_urls_are_normalized(self):
        settings = Settings(
            public_api_url="https://api.example.com/",
            cardcom_base_url="https://secure.cardcom.solutions/api/v11/",
            _env_file=None,
        )

        assert settings.webhook_url == "https://api.example.com/api/webhooks/cardcom"
        assert settings.cardcom_base_url.endswith("/api/v11")

    def test_allowed_origins_includes_localhost(self):
        from app.config.settings import settings

        assert "http://localhost:5173" in settings.allowed_origins
