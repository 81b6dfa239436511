"""Tests for settings loading and storage configuration."""

import os
from unittest.mock import patch

import pytest

from hybrid_storage.config import (
    R2Config,
    StorageConfig,
    get_config_path,
    get_settings,
    interpolate_env_vars,
    load_app_config,
    set_config_path,
)
from hybrid_storage.lib.storage.base import StorageMode


class TestConfigPath:
    """Test config file resolution."""

    def test_override_is_returned(self, tmp_path):
        custom = tmp_path / "custom.yaml"
        set_config_path(custom)
        assert get_config_path() == custom

    def test_env_specific_file(self):
        with patch.dict(os.environ, {"HYBRID_STORAGE_ENV": "testing"}):
            path = get_config_path()
        assert path.name == "app.testing.yaml"

    def test_production_uses_app_yaml(self):
        with patch.dict(os.environ, {"HYBRID_STORAGE_ENV": "production"}):
            path = get_config_path()
        assert path.name == "app.yaml"

    def test_missing_file_raises(self, tmp_path):
        set_config_path(tmp_path / "nope.yaml")
        with pytest.raises(FileNotFoundError):
            load_app_config()


class TestInterpolation:
    """Test $VAR substitution in YAML values."""

    def test_nested_values_are_interpolated(self):
        with patch.dict(os.environ, {"R2_BUCKET": "files", "R2_KEY": "AKIA"}):
            result = interpolate_env_vars({"r2": {"bucket": "$R2_BUCKET", "keys": ["$R2_KEY"]}})
        assert result == {"r2": {"bucket": "files", "keys": ["AKIA"]}}

    def test_unset_variable_raises(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("HYBRID_STORAGE_UNSET_VAR", None)
            with pytest.raises(ValueError):
                interpolate_env_vars("$HYBRID_STORAGE_UNSET_VAR")


class TestR2Config:
    """Test fail-closed R2 configuration."""

    def test_complete_config(self):
        config = R2Config(account_id="a", access_key_id="k", secret_access_key="s", bucket="b")

        assert config.is_configured is True
        assert config.missing_fields == []
        assert config.resolved_endpoint == "https://a.r2.cloudflarestorage.com"

    def test_whitespace_counts_as_missing(self):
        config = R2Config(account_id="a", access_key_id="  ", secret_access_key="s", bucket="b")

        assert config.is_configured is False
        assert config.missing_fields == ["access_key_id"]

    def test_explicit_endpoint_wins(self):
        config = R2Config(account_id="a", endpoint_url="http://localhost:9000")
        assert config.resolved_endpoint == "http://localhost:9000"


class TestStorageConfig:
    """Test storage mode parsing and derived flags."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("hybrid", StorageMode.HYBRID),
            ("remote-only", StorageMode.REMOTE_ONLY),
            ("r2-only", StorageMode.REMOTE_ONLY),
            ("R2", StorageMode.REMOTE_ONLY),
            ("local-only", StorageMode.LOCAL_ONLY),
            ("local", StorageMode.LOCAL_ONLY),
            ("sideways", StorageMode.HYBRID),
        ],
    )
    def test_mode_parsing(self, raw, expected):
        assert StorageConfig(mode=raw).mode is expected

    def test_defaults(self):
        config = StorageConfig()

        assert config.max_upload_size == 10 * 1024 * 1024
        assert config.max_avatar_size == 2 * 1024 * 1024
        assert config.availability_check_interval == 60.0
        assert config.location_cache_ttl == 300.0
        assert config.location_cache_size == 1000
        assert config.retry.max_attempts == 3
        assert config.retry.base_delay == 1.0

    def test_remote_disabled_without_credentials(self):
        assert StorageConfig().remote_enabled is False

    def test_remote_disabled_in_local_only_mode(self):
        r2 = R2Config(account_id="a", access_key_id="k", secret_access_key="s", bucket="b")

        assert StorageConfig(r2=r2).remote_enabled is True
        assert StorageConfig(r2=r2, mode="local-only").remote_enabled is False


class TestGetSettings:
    """Test merging the YAML file into Settings."""

    def test_yaml_values_are_loaded(self, temp_app_yaml):
        path = temp_app_yaml(
            {
                "log_level": "DEBUG",
                "storage": {
                    "mode": "r2-only",
                    "r2": {
                        "account_id": "$TEST_R2_ACCOUNT",
                        "access_key_id": "k",
                        "secret_access_key": "s",
                        "bucket": "b",
                    },
                    "max_upload_size": 1024,
                },
                "logfire": {"enabled": False, "service_name": "files"},
            }
        )
        set_config_path(path)

        with patch.dict(os.environ, {"TEST_R2_ACCOUNT": "acct"}):
            settings = get_settings()

        assert settings.log_level == "DEBUG"
        assert settings.storage.mode is StorageMode.REMOTE_ONLY
        assert settings.storage.r2.account_id == "acct"
        assert settings.storage.max_upload_size == 1024
        assert settings.logfire.service_name == "files"

    def test_missing_file_gives_defaults(self, tmp_path):
        set_config_path(tmp_path / "absent.yaml")

        settings = get_settings()

        assert settings.storage.mode is StorageMode.HYBRID
        assert settings.storage.r2.is_configured is False

    def test_settings_are_cached(self, temp_app_yaml):
        set_config_path(temp_app_yaml({"debug": True}))

        assert get_settings() is get_settings()
