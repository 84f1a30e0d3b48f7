"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from tokenkeeper.config import THIRTY_DAYS_SECONDS, Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_defaults(self, monkeypatch):
        for name in ("REFRESH_THRESHOLD_SECONDS", "BLACKLIST_FAIL_CLOSED", "SESSION_TTL_SECONDS"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.refresh_threshold_seconds == 300
        assert settings.blacklist_ttl_seconds == THIRTY_DAYS_SECONDS
        assert settings.blacklist_fail_closed is True
        assert settings.session_ttl_seconds == 86400
        assert settings.redis_max_retries == 3
        assert settings.redis_retry_base_ms == 50
        assert settings.redis_retry_cap_ms == 2000

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ISSUER_BASE_URL", "https://login.example.com/")
        monkeypatch.setenv("BASE_URL", "https://app.example.com/")
        monkeypatch.setenv("BLACKLIST_FAIL_CLOSED", "false")
        monkeypatch.setenv("REDIS_MAX_RETRIES", "5")
        settings = Settings.from_env()
        assert settings.issuer_base_url == "https://login.example.com"
        assert settings.redirect_uri == "https://app.example.com/callback"
        assert settings.blacklist_fail_closed is False
        assert settings.redis_max_retries == 5

    def test_blank_redis_url_is_none(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "  ")
        assert Settings.from_env().redis_url is None

    def test_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("CLIENT_ID", raising=False)
        (tmp_path / ".env").write_text("CLIENT_ID=from-dotenv\n")
        assert Settings.from_env().client_id == "from-dotenv"

    def test_test_mode_from_env(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "true")
        settings = Settings.from_env()
        assert settings.test_mode is True
        assert "log_level" not in Settings.model_fields

    def test_negative_retries_rejected(self):
        with pytest.raises(ValidationError):
            Settings(redis_max_retries=-1)


class TestSettingsCache:
    def test_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("CLIENT_ID", "other-client")
        reset_settings_cache()
        assert get_settings().client_id == "other-client"
        reset_settings_cache()
