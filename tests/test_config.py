"""Tests for configuration loading, validation and hot reload."""

import os
from pathlib import Path

import pytest

from mailflow.config import (
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from mailflow.config_schema import AppConfig, SyncConfig
from mailflow.core.errors import ConfigLoadError, ConfigValidationError


def _bump_mtime(path: Path) -> None:
    stat = path.stat()
    os.utime(path, (stat.st_atime, stat.st_mtime + 5))


class TestLoadConfig:
    def test_valid_file(self, config_file: Path, data_dir: Path):
        config = load_config(config_file)

        assert config.oauth.client_id == "test-client-id"
        assert config.database.path == str(data_dir / "mailflow.db")
        assert config.sync.interval_minutes == 10
        # Sections left out fall back to defaults
        assert config.detection.duplicate_window_days == 3
        assert config.circuit_breaker.failure_threshold == 3

    def test_empty_file_uses_defaults(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("")

        config = load_config(path)

        assert config == AppConfig()

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("sync: [unclosed\n")
        with pytest.raises(ConfigLoadError, match="Failed to parse YAML"):
            load_config(path)

    def test_not_a_mapping(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigLoadError, match="mapping"):
            load_config(path)

    def test_field_errors_are_reported_by_path(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("sync:\n  page_size: 900\ndatabase:\n  path: ../outside.db\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(path)

        message = str(exc_info.value)
        assert "sync.page_size" in message
        assert "database.path" in message

    def test_newer_schema_version(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n")
        with pytest.raises(ConfigValidationError, match="newer than supported"):
            load_config(path)


class TestSchema:
    def test_retry_delays_required(self):
        with pytest.raises(ValueError):
            SyncConfig(retry_delays=[])

    def test_negative_retry_delay(self):
        with pytest.raises(ValueError):
            SyncConfig(retry_delays=[1.0, -1.0])

    def test_storage_root_traversal(self, sample_config_dict):
        sample_config_dict["storage"] = {"root": "data/../../etc"}
        with pytest.raises(ValueError):
            AppConfig(**sample_config_dict)


class TestSingleton:
    def test_get_config_reads_env_path(self, set_config_env):
        config = get_config()
        assert config.oauth.client_id == "test-client-id"
        assert get_config() is config

    def test_reload_before_load(self):
        assert reload_config_if_changed() is False

    def test_reload_unchanged(self, set_config_env):
        get_config()
        assert reload_config_if_changed() is False

    def test_reload_picks_up_change(self, set_config_env, config_file: Path):
        get_config()
        config_file.write_text(config_file.read_text().replace("interval_minutes: 10", "interval_minutes: 5"))
        _bump_mtime(config_file)

        assert reload_config_if_changed() is True
        assert get_config().sync.interval_minutes == 5

    def test_invalid_change_keeps_previous(self, set_config_env, config_file: Path):
        previous = get_config()
        config_file.write_text("sync:\n  interval_minutes: 0\n")
        _bump_mtime(config_file)

        assert reload_config_if_changed() is False
        assert get_config() is previous


class TestValidateConfigFile:
    def test_valid(self, config_file: Path):
        ok, message = validate_config_file(config_file)
        assert ok is True
        assert "schema version 1" in message
        assert "duplicate window +/-3 days" in message

    def test_invalid(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("detection:\n  duplicate_window_days: -1\n")

        ok, message = validate_config_file(path)

        assert ok is False
        assert message.startswith("Validation error:")

    def test_missing(self, tmp_path: Path):
        ok, message = validate_config_file(tmp_path / "missing.yaml")
        assert ok is False
        assert message.startswith("Load error:")
