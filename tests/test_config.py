"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from churchregistry.config import MIN_JWT_SECRET_BYTES, Settings

STRONG_SECRET = "x" * MIN_JWT_SECRET_BYTES


class TestJwtSecret:
    def test_short_secret_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short", shared_fs_root=str(tmp_path))

    def test_secret_of_minimum_length_accepted(self, tmp_path):
        settings = Settings(jwt_secret=STRONG_SECRET, shared_fs_root=str(tmp_path))
        assert settings.jwt_secret == STRONG_SECRET

    def test_missing_secret_is_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(shared_fs_root=str(tmp_path))
        second = Settings(shared_fs_root=str(tmp_path))

        assert len(first.jwt_secret.encode()) >= MIN_JWT_SECRET_BYTES
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text().strip() == first.jwt_secret


class TestSettingsValues:
    def test_defaults(self, tmp_path):
        settings = Settings(jwt_secret=STRONG_SECRET, shared_fs_root=str(tmp_path))
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.refresh_sweep_enabled is True

    @pytest.mark.parametrize(
        "field", ["access_token_ttl_minutes", "refresh_token_ttl_minutes", "refresh_sweep_interval_seconds"]
    )
    def test_non_positive_durations_rejected(self, tmp_path, field):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=STRONG_SECRET, shared_fs_root=str(tmp_path), **{field: 0})

    def test_cors_origins_split_from_string(self, tmp_path):
        settings = Settings(
            jwt_secret=STRONG_SECRET,
            shared_fs_root=str(tmp_path),
            cors_allow_origins="https://a.example, https://b.example,",
        )
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("REFRESH_SWEEP_ENABLED", "false")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 5
        assert settings.refresh_sweep_enabled is False
