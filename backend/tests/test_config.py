# tests/test_config.py — Environment configuration
from datetime import timedelta

import pytest

from config import ConfigError, describe, load_settings, parse_duration

BASE_ENV = {"ENCRYPTION_SECRET": "0123456789abcdef", "JWT_SECRET_KEY": "k" * 32}


class TestDurations:
    def test_go_style_units(self):
        assert parse_duration("15m") == timedelta(minutes=15)
        assert parse_duration("720h") == timedelta(hours=720)
        assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)
        assert parse_duration("250ms") == timedelta(milliseconds=250)

    def test_bare_number_is_seconds(self):
        assert parse_duration("90") == timedelta(seconds=90)

    @pytest.mark.parametrize("value", ["", "abc", "10x", "5m junk"])
    def test_rejects_garbage(self, value):
        with pytest.raises(ConfigError):
            parse_duration(value)


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings(BASE_ENV)
        assert settings.access_expiry_seconds == 900
        assert settings.refresh_token_expiry == timedelta(hours=720)
        assert settings.rotate_refresh_tokens is True
        assert settings.image_update_check_enabled is False
        assert settings.operation_timeout_seconds == 600
        assert settings.api_key_prefix == "berth_"

    def test_short_encryption_secret_fails_fast(self):
        with pytest.raises(ConfigError):
            load_settings({"ENCRYPTION_SECRET": "too-short"})

    def test_missing_encryption_secret_fails_fast(self):
        with pytest.raises(ConfigError):
            load_settings({})

    def test_rotation_mode_validated(self):
        with pytest.raises(ConfigError):
            load_settings(dict(BASE_ENV, REFRESH_TOKEN_ROTATION_MODE="sometimes"))
        settings = load_settings(dict(BASE_ENV, REFRESH_TOKEN_ROTATION_MODE="never"))
        assert settings.rotate_refresh_tokens is False

    def test_same_site_validated(self):
        with pytest.raises(ConfigError):
            load_settings(dict(BASE_ENV, SESSION_SAME_SITE="sideways"))

    def test_disabled_registries_csv(self):
        settings = load_settings(dict(
            BASE_ENV, IMAGE_UPDATE_CHECK_DISABLED_REGISTRIES="ghcr.io, docker.io ,,",
        ))
        assert settings.image_update_check_disabled_registries == ["ghcr.io", "docker.io"]

    def test_generates_ephemeral_jwt_secret(self):
        settings = load_settings({"ENCRYPTION_SECRET": "0123456789abcdef"})
        assert len(settings.jwt_secret_key) > 32

    def test_describe_omits_secrets(self):
        view = describe(load_settings(BASE_ENV))
        rendered = repr(view)
        assert "0123456789abcdef" not in rendered
        assert "k" * 32 not in rendered
