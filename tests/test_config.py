"""Tests for application configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from imobibase.config import Environment, Settings

SECURE_PROD = {
    "environment": Environment.PROD,
    "secret_key": "9f1c2e7a-prod-signing-material",
    "dev_jwt_secret": "4b8d0c6e-prod-jwt-material",
    "audit_signing_key": "e3a5f7b9-prod-audit-material",
    "clicksign_webhook_secret": "c1d2e3f4-clicksign-material",
    "database_url": "postgresql+asyncpg://imobibase:Xk29vQ7rLm@db:5432/imobibase",
}


class TestSettings:
    """Test Settings model and validation."""

    def test_default_settings_load_correctly(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEV
        assert settings.debug is True  # Auto-set from DEV environment
        assert settings.export_expiry_days == 7
        assert settings.audit_log_retention_years == 5
        assert settings.clicksign_webhook_max_age_seconds == 300
        assert settings.clicksign_webhook_max_future_skew_seconds == 30
        assert settings.clicksign_webhook_secret is None

    def test_is_dev_property_returns_true_for_test(self):
        settings = Settings(environment=Environment.TEST)
        assert settings.is_dev is True
        assert settings.is_prod is False

    def test_environment_enum_values(self):
        assert Environment.DEV == "dev"
        assert Environment.PROD == "prod"
        assert Environment.TEST == "test"

    def test_debug_not_auto_enabled_in_prod(self):
        settings = Settings(**SECURE_PROD, debug=False)
        assert settings.is_prod is True
        assert settings.debug is False

    def test_derived_directories(self):
        settings = Settings(upload_dir=Path("/srv/uploads"))
        assert settings.exports_dir == Path("/srv/uploads/exports")
        assert settings.certificates_dir == Path("/srv/uploads/certificates")

    def test_absolute_url(self):
        assert Settings(public_base_url="").absolute_url("/x") == "/x"
        assert (
            Settings(public_base_url="https://app.example.com/").absolute_url("/x")
            == "https://app.example.com/x"
        )

    def test_rate_limit_must_be_non_negative(self):
        with pytest.raises(ValidationError):
            Settings(rate_limit_per_minute=-1)


class TestProductionGuard:
    """Production refuses to start with default or missing secrets."""

    def test_defaults_are_rejected(self):
        with pytest.raises(RuntimeError) as exc_info:
            Settings(environment=Environment.PROD)

        message = str(exc_info.value)
        assert "PRODUCTION STARTUP BLOCKED" in message
        assert "SECRET_KEY" in message
        assert "AUDIT_SIGNING_KEY" in message
        assert "CLICKSIGN_WEBHOOK_SECRET" in message
        assert "POSTGRES_PASSWORD" in message

    def test_missing_webhook_secret_alone_is_rejected(self):
        values = {**SECURE_PROD, "clicksign_webhook_secret": None}
        with pytest.raises(RuntimeError, match="CLICKSIGN_WEBHOOK_SECRET"):
            Settings(**values)

    def test_secure_configuration_starts(self):
        assert Settings(**SECURE_PROD).is_prod is True
