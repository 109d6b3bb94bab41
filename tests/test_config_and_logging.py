import pytest
from pydantic import ValidationError

from bookwave.config import DuplicateBackend, Settings, get_settings, reset_settings_cache
from bookwave.logging import (
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    redact_value,
    set_correlation_id,
)


class TestSettings:
    def test_env_overrides_are_parsed(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_TIME_URLS", "https://a.test/, https://b.test/ ,")
        monkeypatch.setenv("DUPLICATE_BACKEND", "redis")
        monkeypatch.setenv("PHONE_CODE_LENGTH", "6")
        settings = Settings.from_env()
        assert settings.trusted_time_urls == ["https://a.test/", "https://b.test/"]
        assert settings.duplicate_backend is DuplicateBackend.REDIS
        assert settings.phone_code_length == 6

    def test_defaults(self, monkeypatch):
        for name in ("EMAIL_CODE_LENGTH", "PHONE_CODE_LENGTH", "SESSION_TTL_MINUTES"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.email_code_length == 6
        assert settings.phone_code_length == 5
        assert settings.session_ttl_minutes == 30 * 24 * 60

    def test_non_positive_code_length_rejected(self):
        with pytest.raises(ValidationError):
            Settings(email_code_length=0)

    def test_unknown_duplicate_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(duplicate_backend="memcached")

    def test_settings_cache_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("SESSION_COOKIE_NAME", "bw_session")
        reset_settings_cache()
        assert get_settings().session_cookie_name == "bw_session"
        reset_settings_cache()


class TestLogRedaction:
    def test_sensitive_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "code_dispatched",
                "destination": "+15550001111",
                "email": "reader@example.com",
                "session_token": "abcdefghijkl",
                "code": "12345",
                "error_code": "validation_error",
                "flow": "phone",
            },
        )
        assert event["destination"] == "+1***11"
        assert event["email"] == "re***om"
        assert event["session_token"] == "ab***kl"
        assert event["code"] == "12***45"
        assert event["error_code"] == "validation_error"
        assert event["flow"] == "phone"
        assert event["event"] == "code_dispatched"

    def test_short_values_fully_masked(self):
        assert redact_value("abc") == "***"

    def test_correlation_id_roundtrip(self):
        reset = correlation_id_var.set(None)
        try:
            assert set_correlation_id("req-1") == "req-1"
            assert get_correlation_id() == "req-1"
            assert len(set_correlation_id()) == 36
        finally:
            correlation_id_var.reset(reset)
