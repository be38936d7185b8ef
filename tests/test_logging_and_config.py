import pytest
from pydantic import ValidationError

from trustcore.config import MIN_SECRET_LENGTH, Settings, get_settings, reset_settings_cache
from trustcore.logging import (
    _redact_secrets,
    get_correlation_id,
    redact_email,
    redact_value,
    set_correlation_id,
)

LONG_KEY = "k" * MIN_SECRET_LENGTH


class TestRedaction:
    @pytest.mark.parametrize(
        "key",
        [
            "password",
            "secret",
            "token",
            "code",
            "authorization",
            "signing_secret",
            "password_hash",
            "backup_code_hash",
        ],
    )
    def test_secret_keys_are_masked(self, key):
        assert redact_value(key, "hunter2-value") == "[REDACTED]"

    @pytest.mark.parametrize(
        "key",
        ["error_code", "status_code", "backup_code_count", "backup_codes_remaining", "webhook_id"],
    )
    def test_counters_and_ids_pass_through(self, key):
        assert redact_value(key, "visible") == "visible"

    def test_email_partially_masked(self):
        assert redact_value("email", "ada@acme.test") == "ad***st"
        assert redact_email("ada@acme.test") == "ad***@acme.test"
        assert redact_email("nonsense") == "redacted"

    def test_non_strings_untouched(self):
        assert redact_value("code", 123456) == 123456

    def test_processor_skips_event_name(self):
        event = _redact_secrets(
            None, "info", {"event": "token_minted", "token": "abc", "account_id": "a1"}
        )
        assert event == {"event": "token_minted", "token": "[REDACTED]", "account_id": "a1"}


def test_correlation_id_generated_and_kept():
    generated = set_correlation_id()
    assert get_correlation_id() == generated
    assert set_correlation_id("req-123") == "req-123"
    assert get_correlation_id() == "req-123"


class TestSettings:
    def test_test_mode_skips_key_checks(self):
        settings = Settings(test_mode=True)
        assert settings.service_token_secret is None

    def test_keys_required_outside_test_mode(self):
        with pytest.raises(ValidationError):
            Settings(test_mode=False, secret_encryption_key=LONG_KEY)

    def test_short_keys_rejected(self):
        with pytest.raises(ValidationError):
            Settings(
                test_mode=False,
                service_token_secret="short",
                secret_encryption_key=LONG_KEY,
            )

    def test_valid_production_settings(self):
        settings = Settings(
            test_mode=False,
            service_token_secret=LONG_KEY,
            secret_encryption_key="e" * MIN_SECRET_LENGTH,
            app_base_url="https://app.acme.test/",
        )
        assert settings.app_base_url == "https://app.acme.test"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("backup_code_count", 7),
            ("backup_code_count", 11),
            ("totp_window_steps", 3),
            ("service_token_ttl_seconds", 10),
            ("password_min_length", 4),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            Settings(test_mode=True, **{field: value})

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("INVITATION_TTL_DAYS", "3")
        monkeypatch.setenv("TOTP_ISSUER", "Acme")
        reset_settings_cache()
        try:
            settings = get_settings()
            assert settings.invitation_ttl_days == 3
            assert settings.totp_issuer == "Acme"
            assert settings.use_memory_store is True
        finally:
            reset_settings_cache()
