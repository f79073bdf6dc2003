"""Tests for ConfigManager loading, overrides and validation."""

import json
import os

import pytest

from agent_queue.exceptions import ConfigValidationError, InvalidConfigError
from agent_queue.models.system_configuration import SystemConfiguration
from agent_queue.services.config_manager import ConfigManager, default_config_path


class TestConfigManager:
    """Test configuration management."""

    def setup_method(self):
        self.manager = ConfigManager()

    def write_config(self, tmp_path, data, name="config.json"):
        path = tmp_path / name
        path.write_text(data if isinstance(data, str) else json.dumps(data))
        return str(path)

    def test_missing_file_gives_defaults(self, tmp_path):
        config = self.manager.load_config(str(tmp_path / "absent.json"))
        assert config.execution_timeout == 1800

    def test_malformed_file_raises(self, tmp_path):
        path = self.write_config(tmp_path, "{broken")
        with pytest.raises(InvalidConfigError):
            self.manager.load_config(path)

    def test_business_rule_violation_raises(self, tmp_path):
        path = self.write_config(
            tmp_path, {"execution": {"timeout_seconds": 5, "cancel_grace_seconds": 10}}
        )
        with pytest.raises(ConfigValidationError):
            self.manager.load_config(path)

    def test_recovery_moves_corrupt_file_aside(self, tmp_path):
        path = self.write_config(tmp_path, "{broken")
        config = self.manager.load_config_with_recovery(path)

        assert config.log_level.value == "INFO"
        assert not os.path.exists(path)
        assert any(".corrupted." in p.name for p in tmp_path.iterdir())

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = self.write_config(tmp_path, {"log_level": "INFO"})
        monkeypatch.setenv("AGENT_QUEUE_LOG_LEVEL", "debug")
        monkeypatch.setenv("AGENT_QUEUE_TASK_TIMEOUT", "600")
        monkeypatch.setenv("AGENT_QUEUE_MAX_RETRIES", "5")
        monkeypatch.setenv("AGENT_QUEUE_OPENCODE_MODEL", "openai/gpt-5")

        config = self.manager.load_config_with_env_override(path)
        assert config.log_level.value == "DEBUG"
        assert config.execution["timeout_seconds"] == 600
        assert config.retry["default_max_retries"] == 5
        assert config.get_agent_settings("opencode")["default_model"] == "openai/gpt-5"

    def test_invalid_env_override_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("AGENT_QUEUE_TASK_TIMEOUT", "soon")
        config = self.manager.load_config_with_env_override(str(tmp_path / "absent.json"))
        assert config.execution["timeout_seconds"] == 1800

    def test_default_path_follows_data_dir(self, isolated_data_dir):
        assert default_config_path() == os.path.join(str(isolated_data_dir), "config.json")

    def test_save_keeps_backup(self, tmp_path):
        path = str(tmp_path / "config.json")
        config = SystemConfiguration()
        assert self.manager.save_config(config, path)
        assert self.manager.save_config(config, path)
        assert os.path.exists(path + ".backup")

    def test_save_refuses_invalid_config(self, tmp_path):
        config = SystemConfiguration(execution={"timeout_seconds": 5, "cancel_grace_seconds": 10})
        assert not self.manager.save_config(config, str(tmp_path / "config.json"))

    def test_validation_warnings(self):
        config = SystemConfiguration(
            execution={"timeout_seconds": 30, "cancel_grace_seconds": 5},
            retry={"default_max_retries": 0},
            agents={"claude": {"default_model": None, "executable_path": "/nowhere/claude"}},
        )
        result = self.manager.validate_config(config)
        assert result.is_valid
        assert len(result.warnings) == 4

    def test_update_setting_saves(self, tmp_path):
        path = self.write_config(tmp_path, {})
        self.manager.load_config(path)
        assert self.manager.update_config_setting("retry", "default_max_retries", 7)

        with open(path, "r", encoding="utf-8") as f:
            assert json.load(f)["retry"]["default_max_retries"] == 7
        assert not self.manager.update_config_setting("logs", "artifact_max_bytes", 1)

    def test_summary(self, tmp_path):
        assert self.manager.get_config_summary() == {"status": "no_config_loaded"}
        self.manager.load_default_config()
        summary = self.manager.get_config_summary()
        assert summary["agents"]["claude"] == "sonnet"
        assert summary["default_max_retries"] == 3
