"""Tests for application settings."""

import pytest
from pydantic import SecretStr, ValidationError

from custodian.config.settings import LockBackend, Settings, get_settings
from custodian.utils.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    """Tests for Settings validation."""

    def test_defaults(self) -> None:
        settings = Settings(_env_file=None)

        assert settings.lock_backend == LockBackend.DATABASE
        assert settings.lock_ttl_seconds == 900
        assert settings.max_erase_retries == 3
        assert settings.worker_id.startswith("custodian-")

    def test_renew_margin_must_be_shorter_than_ttl(self) -> None:
        with pytest.raises(ValidationError, match="lock_renew_margin_seconds"):
            Settings(_env_file=None, lock_ttl_seconds=60, lock_renew_margin_seconds=60)

    def test_production_requires_signing_key(self) -> None:
        with pytest.raises(ValidationError, match="certificate_signing_key"):
            Settings(_env_file=None, ENVIRONMENT="production")

    def test_production_with_signing_key(self) -> None:
        settings = Settings(
            _env_file=None,
            ENVIRONMENT="production",
            certificate_signing_key=SecretStr("a-real-key"),
        )

        assert settings.ENVIRONMENT == "production"

    def test_reads_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOCK_BACKEND", "redis")
        monkeypatch.setenv("ERASE_BATCH_SIZE", "25")

        settings = Settings(_env_file=None)

        assert settings.lock_backend == LockBackend.REDIS
        assert settings.erase_batch_size == 25


class TestGetSettings:
    """Tests for get_settings."""

    def test_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_invalid_environment_raises_configuration_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOCK_TTL_SECONDS", "not-a-number")

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            get_settings()
