"""
Unit tests for configuration loading and validation.
"""

from dataclasses import replace

import pytest

from evidence_kernel.config import (
    Environment,
    KernelConfig,
    StoreBackend,
    get_settings,
    get_test_settings,
)

pytestmark = [pytest.mark.unit]


@pytest.fixture
def clean_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    """Tests for the Settings object."""

    def test_test_settings(self):
        settings = get_test_settings()

        assert settings.environment == Environment.DEVELOPMENT
        assert settings.kernel.store_backend == StoreBackend.MEMORY
        assert settings.build_version == "evidence-kernel/1.0.0-test"
        assert settings.validate() == []

    def test_config_hash_stable_and_sensitive(self):
        settings = get_test_settings()
        changed = replace(settings, kernel=replace(settings.kernel, command_ttl_hours=48))

        assert settings.config_hash == get_test_settings().config_hash
        assert changed.config_hash != settings.config_hash

    def test_password_not_in_hash_or_connection_string(self):
        settings = get_test_settings()
        rotated = replace(settings, postgres=replace(settings.postgres, password="rotated"))

        assert rotated.config_hash == settings.config_hash
        assert "test_password" not in settings.postgres.connection_string

    @pytest.mark.parametrize("kernel,message", [
        (KernelConfig(command_ttl_hours=0), "Command TTL must be positive"),
        (KernelConfig(command_cache_size=-1), "Command cache size cannot be negative"),
        (KernelConfig(max_resolution_days=120), "Quarantine resolution window must be between 1 and 90 days"),
    ])
    def test_validate_kernel_knobs(self, kernel, message):
        settings = replace(get_test_settings(), kernel=kernel)
        assert message in settings.validate()

    def test_production_requires_postgres_and_ssl(self):
        settings = replace(get_test_settings(), environment=Environment.PRODUCTION)
        errors = settings.validate()

        assert "Production requires the postgres store backend" in errors
        assert "SSL must be required in production" in errors


class TestGetSettings:
    """Tests for environment loading."""

    def test_defaults(self, monkeypatch, clean_settings_cache):
        for key in ("ENVIRONMENT", "STORE_BACKEND", "COMMAND_TTL_HOURS", "BUILD_VERSION"):
            monkeypatch.delenv(key, raising=False)

        settings = get_settings()

        assert settings.environment == Environment.DEVELOPMENT
        assert settings.kernel.store_backend == StoreBackend.MEMORY
        assert settings.kernel.command_ttl_hours == 24
        assert settings.kernel.followup_window_days == 14

    def test_environment_overrides(self, monkeypatch, clean_settings_cache):
        monkeypatch.setenv("ENVIRONMENT", "staging")
        monkeypatch.setenv("STORE_BACKEND", "POSTGRES")
        monkeypatch.setenv("COMMAND_TTL_HOURS", "6")
        monkeypatch.setenv("MAX_RESOLUTION_DAYS", "30")
        monkeypatch.setenv("BUILD_VERSION", "2.3.1")

        settings = get_settings()

        assert settings.environment == Environment.STAGING
        assert settings.kernel.store_backend == StoreBackend.POSTGRES
        assert settings.kernel.command_ttl_hours == 6
        assert settings.kernel.max_resolution_days == 30
        assert settings.build_version == "evidence-kernel/2.3.1"

    def test_settings_are_cached(self, monkeypatch, clean_settings_cache):
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        assert get_settings() is get_settings()

    def test_production_requires_password(self, monkeypatch, clean_settings_cache):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.delenv("POSTGRES_PASSWORD", raising=False)

        with pytest.raises(ValueError):
            get_settings()

    def test_production_rejects_invalid_config(self, monkeypatch, clean_settings_cache):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("POSTGRES_PASSWORD", "secret")
        monkeypatch.setenv("STORE_BACKEND", "memory")

        with pytest.raises(ValueError, match="Configuration errors in production"):
            get_settings()
