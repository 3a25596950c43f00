import os

import pytest
from pydantic import ValidationError

from officegate.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self, tmp_path):
        settings = Settings(
            shared_fs_root=str(tmp_path),
            jwt_secret="a" * 40,
            jwt_refresh_secret="b" * 40,
        )

        assert settings.access_token_ttl_minutes == 24 * 60
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.max_login_attempts == 5
        assert settings.lockout_minutes == 30
        assert settings.totp_window_steps == 1
        assert settings.allow_registration

    def test_identical_secrets_rejected(self):
        with pytest.raises(ValidationError, match="must differ"):
            Settings(jwt_secret="same-secret-value", jwt_refresh_secret="same-secret-value")

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="a" * 40, jwt_refresh_secret="b" * 40, lockout_minutes=0)

    def test_cors_origins_split(self):
        settings = Settings(
            jwt_secret="a" * 40,
            jwt_refresh_secret="b" * 40,
            cors_allow_origins="https://app.example.com, https://admin.example.com",
        )

        assert settings.cors_allow_origins == [
            "https://app.example.com",
            "https://admin.example.com",
        ]

    def test_missing_secrets_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None, jwt_refresh_secret=None)
        second = Settings(jwt_secret=None, jwt_refresh_secret=None)

        assert first.jwt_secret == second.jwt_secret
        assert first.jwt_secret != first.jwt_refresh_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
        assert oct(os.stat(tmp_path / ".jwt_refresh_secret").st_mode & 0o777) == "0o600"

    def test_mfa_key_falls_back_to_resolved_access_secret(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        generated = Settings(jwt_secret=None, jwt_refresh_secret=None, mfa_secret_key=None)
        explicit = Settings(
            jwt_secret="a" * 40, jwt_refresh_secret="b" * 40, mfa_secret_key="mfa-key"
        )

        assert generated.mfa_encryption_key == generated.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == generated.mfa_encryption_key
        assert explicit.mfa_encryption_key == "mfa-key"


class TestFromEnv:
    def test_environment_values_used(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "3")
        monkeypatch.setenv("ALLOW_REGISTRATION", "false")
        reset_settings_cache()

        settings = get_settings()

        assert settings.max_login_attempts == 3
        assert settings.allow_registration is False
        assert get_settings() is settings
        reset_settings_cache()
