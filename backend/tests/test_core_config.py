"""
Tests for capgate/core/config.py - Configuration and settings validation.
"""
import importlib

import pytest


@pytest.fixture(autouse=True)
def no_database_url(monkeypatch):
    """Settings under test build DATABASE_URL from the POSTGRES_* values."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SQLALCHEMY_DATABASE_URI", raising=False)


class TestSettingsValidation:
    """Test configuration validation logic."""

    def test_development_mode_allows_default_secrets(self, monkeypatch):
        """Development mode should allow the default database password."""
        monkeypatch.setenv("ENVIRONMENT", "development")
        monkeypatch.setenv("DEBUG", "true")

        from capgate.core import config
        importlib.reload(config)

        assert config.settings.ENVIRONMENT == "development"
        assert config.settings.IS_PRODUCTION is False

    def test_production_mode_rejects_insecure_db_password(self, monkeypatch):
        """Production mode must reject insecure database passwords."""
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.setenv("POSTGRES_PASSWORD", "postgres")

        from capgate.core import config

        with pytest.raises(ValueError) as exc_info:
            importlib.reload(config)

        assert "POSTGRES_PASSWORD is insecure" in str(exc_info.value)

    def test_production_mode_rejects_insecure_database_url(self, monkeypatch):
        """A DATABASE_URL with a default password is rejected too."""
        from capgate.core.config import Settings

        with pytest.raises(ValueError) as exc_info:
            Settings(
                ENVIRONMENT="production",
                DEBUG=False,
                DATABASE_URL="postgresql+asyncpg://app:changeme@db:5432/capgate",
            )

        assert "DATABASE_URL contains an insecure password" in str(exc_info.value)

    def test_production_mode_rejects_debug(self):
        from capgate.core.config import Settings

        with pytest.raises(ValueError) as exc_info:
            Settings(ENVIRONMENT="production", DEBUG=True, POSTGRES_PASSWORD="s3cure-and-long")

        assert "DEBUG must be False in production" in str(exc_info.value)

    def test_production_mode_accepts_secure_settings(self):
        from capgate.core.config import Settings

        settings = Settings(ENVIRONMENT="Production", DEBUG=False, POSTGRES_PASSWORD="s3cure-and-long")

        assert settings.IS_PRODUCTION is True

    def test_default_limit_cannot_exceed_max(self):
        """Query limits are checked in every environment."""
        from capgate.core.config import Settings

        with pytest.raises(ValueError) as exc_info:
            Settings(QUERY_DEFAULT_LIMIT=500, QUERY_MAX_LIMIT=100)

        assert "QUERY_DEFAULT_LIMIT must not exceed QUERY_MAX_LIMIT" in str(exc_info.value)

    def test_retry_attempts_must_be_positive(self):
        from capgate.core.config import Settings

        with pytest.raises(ValueError) as exc_info:
            Settings(RETRY_MAX_ATTEMPTS=0)

        assert "RETRY_MAX_ATTEMPTS" in str(exc_info.value)

    def test_all_errors_reported_together(self):
        from capgate.core.config import Settings

        with pytest.raises(ValueError) as exc_info:
            Settings(ENVIRONMENT="production", DEBUG=True, POSTGRES_PASSWORD="password", RETRY_MAX_ATTEMPTS=0)

        message = str(exc_info.value)
        assert "Configuration errors:" in message
        assert message.count("  - ") == 3


class TestDatabaseUrl:
    """DATABASE_URL is built from the POSTGRES_* components when absent."""

    def test_built_from_components(self):
        from capgate.core.config import Settings

        settings = Settings(POSTGRES_USER="gate", POSTGRES_PASSWORD="pw", POSTGRES_SERVER="pg", POSTGRES_DB="plant")

        assert settings.DATABASE_URL == "postgresql+asyncpg://gate:pw@pg:5432/plant"

    def test_host_alias(self, monkeypatch):
        from capgate.core.config import Settings

        monkeypatch.setenv("POSTGRES_HOST", "db.internal")

        assert "@db.internal:5432/" in Settings().DATABASE_URL
