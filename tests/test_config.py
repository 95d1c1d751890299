"""
tests/test_config.py -- Settings validation and get_settings() error surfacing.

Settings reads the process environment, so every test constructs Settings
with explicit values, and get_settings() tests clear its lru_cache before
and after running.
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from pydantic import ValidationError

from core.config import ConfigurationError, Settings, get_settings

GOOD_ACCESS = "a" * 40
GOOD_REFRESH = "b" * 40


@pytest.fixture
def fresh_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSecrets:
    def test_debug_generates_missing_secrets(self) -> None:
        settings = Settings(debug=True, secret_key="", refresh_secret_key="")
        assert len(settings.secret_key) >= 32
        assert len(settings.refresh_secret_key) >= 32
        assert settings.secret_key != settings.refresh_secret_key

    def test_production_requires_secrets(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            Settings(debug=False, secret_key="", refresh_secret_key=GOOD_REFRESH)
        assert "SECRET_KEY is required" in str(exc_info.value)

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=False, secret_key="short", refresh_secret_key=GOOD_REFRESH)

    def test_secrets_must_differ(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=False, secret_key=GOOD_ACCESS, refresh_secret_key=GOOD_ACCESS)

    def test_valid_production_settings(self) -> None:
        settings = Settings(debug=False, secret_key=GOOD_ACCESS, refresh_secret_key=GOOD_REFRESH)
        assert settings.secret_key == GOOD_ACCESS


class TestDefaults:
    def test_lockout_and_session_defaults(self) -> None:
        settings = Settings(debug=True, max_failed_login_attempts=5, lockout_minutes=15)
        assert settings.max_failed_login_attempts == 5
        assert settings.lockout_minutes == 15
        assert Settings.model_fields["session_inactivity_days"].default == 30
        assert Settings.model_fields["reaper_interval_seconds"].default == 6 * 60 * 60
        assert Settings.model_fields["access_token_expire_seconds"].default == 900
        assert Settings.model_fields["refresh_token_rotation"].default is True

    def test_lockout_threshold_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            Settings(debug=True, max_failed_login_attempts=0)


class TestGetSettings:
    def test_invalid_environment_raises_configuration_error_without_secrets(
        self, monkeypatch: pytest.MonkeyPatch, fresh_settings_cache: None
    ) -> None:
        monkeypatch.setenv("DEBUG", "false")
        monkeypatch.setenv("SECRET_KEY", "hunter2-but-too-short")
        monkeypatch.setenv("REFRESH_SECRET_KEY", GOOD_REFRESH)
        with pytest.raises(ConfigurationError) as exc_info:
            get_settings()
        message = str(exc_info.value)
        assert "at least 32 characters" in message
        assert "hunter2" not in message
        assert GOOD_REFRESH not in message

    def test_settings_are_cached(self, fresh_settings_cache: None) -> None:
        assert get_settings() is get_settings()
