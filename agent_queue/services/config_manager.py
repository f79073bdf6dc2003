"""ConfigManager service for configuration management.

Handles loading, saving and validation of the system configuration, with
support for environment variable overrides and recovery from a corrupt
configuration file.
"""

import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..exceptions import ConfigValidationError, InvalidConfigError
from ..models.system_configuration import DATA_DIR_ENV_VAR, SystemConfiguration
from ..utils.logging import get_logger

CONFIG_FILE_NAME = "config.json"


class ConfigValidationResult:
    """Result of configuration validation."""

    def __init__(self):
        self.is_valid = True
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def add_error(self, error: str) -> None:
        """Add validation error."""
        self.errors.append(error)
        self.is_valid = False

    def add_warning(self, warning: str) -> None:
        """Add validation warning."""
        self.warnings.append(warning)


def default_config_path() -> str:
    """``config.json`` inside the data directory."""
    data_dir = os.environ.get(DATA_DIR_ENV_VAR)
    if data_dir:
        base = os.path.expandvars(os.path.expanduser(data_dir))
    elif os.name == "nt":
        base = os.path.expandvars("%LOCALAPPDATA%\\agent-queue")
    else:
        base = os.path.expanduser("~/.agent-queue")
    return os.path.join(base, CONFIG_FILE_NAME)


class ConfigManager:
    """Service for managing system configuration."""

    def __init__(self, config_file: Optional[str] = None):
        """Initialize the config manager."""
        self.config_file = config_file
        self.current_config: Optional[SystemConfiguration] = None
        self._lock = threading.RLock()
        self.logger = get_logger(__name__)
        self.logger.add_context(service="config_manager")

        # Environment variable mapping
        self.env_var_mapping = {
            "AGENT_QUEUE_LOG_LEVEL": ("log_level", str),
            DATA_DIR_ENV_VAR: ("data_directory", str),
            "AGENT_QUEUE_TASK_TIMEOUT": ("execution.timeout_seconds", int),
            "AGENT_QUEUE_MAX_RETRIES": ("retry.default_max_retries", int),
            "AGENT_QUEUE_CLAUDE_MODEL": ("agents.claude.default_model", str),
            "AGENT_QUEUE_OPENCODE_MODEL": ("agents.opencode.default_model", str),
        }

    def load_default_config(self) -> SystemConfiguration:
        """Load default configuration."""
        with self._lock:
            self.current_config = SystemConfiguration.create_default()
            return self.current_config

    def load_config(self, file_path: Optional[str] = None) -> SystemConfiguration:
        """
        Load configuration from file.

        Args:
            file_path: Path to configuration file

        Returns:
            SystemConfiguration instance; defaults when the file is missing

        Raises:
            InvalidConfigError: If the file cannot be parsed
            ConfigValidationError: If the configuration breaks a business rule
        """
        config_path = file_path or self.config_file

        if not config_path or not os.path.exists(config_path):
            return self.load_default_config()

        with self._lock:
            try:
                config = SystemConfiguration.from_file(config_path)
            except (OSError, ValueError, ValidationError) as e:
                raise InvalidConfigError(
                    f"Cannot load configuration from {config_path}",
                    details={"error": str(e)},
                ) from e

            validation = self.validate_config(config)
            if not validation.is_valid:
                raise ConfigValidationError(
                    "Invalid configuration", details={"errors": validation.errors}
                )
            for warning in validation.warnings:
                self.logger.warning("Configuration warning", warning=warning)

            self.current_config = config
            self.config_file = config_path
            return config

    def load_config_with_recovery(self, file_path: str) -> SystemConfiguration:
        """
        Load configuration with automatic recovery from corruption.

        A corrupt file is moved aside and defaults are used.
        """
        try:
            return self.load_config(file_path)
        except (InvalidConfigError, ConfigValidationError) as e:
            self.logger.error("Config loading failed", path=file_path, error=str(e))

            if os.path.exists(file_path):
                backup_path = f"{file_path}.corrupted.{int(datetime.now().timestamp())}"
                try:
                    os.replace(file_path, backup_path)
                    self.logger.warning("Corrupted config backed up", backup=backup_path)
                except OSError as move_error:
                    self.logger.error(
                        "Could not back up corrupted config", error=str(move_error)
                    )

            self.config_file = file_path
            return self.load_default_config()

    def load_config_with_env_override(
        self, file_path: Optional[str] = None
    ) -> SystemConfiguration:
        """
        Load configuration with environment variable overrides.

        Args:
            file_path: Configuration file; the default location when omitted

        Returns:
            SystemConfiguration with environment overrides applied
        """
        config = self.load_config_with_recovery(
            file_path or self.config_file or default_config_path()
        )
        self.apply_env_overrides(config)
        return config

    def apply_env_overrides(self, config: SystemConfiguration) -> None:
        for env_var, (config_path, value_type) in self.env_var_mapping.items():
            env_value = os.environ.get(env_var)
            if env_value is None or env_value == "":
                continue
            try:
                converted_value = value_type(env_value)
                if "." in config_path:
                    section, key = config_path.split(".", 1)
                    config.update_setting(section, key, converted_value)
                else:
                    setattr(config, config_path, converted_value)
            except (ValueError, ValidationError) as e:
                self.logger.warning(
                    "Ignoring invalid environment override", env_var=env_var, error=str(e)
                )

    def save_config(
        self, config: SystemConfiguration, file_path: Optional[str] = None
    ) -> bool:
        """
        Save configuration to file.

        Args:
            config: Configuration to save
            file_path: Target file path

        Returns:
            True if saved successfully
        """
        target_path = file_path or self.config_file
        if not target_path:
            raise ValueError("No configuration file path specified")

        with self._lock:
            validation = self.validate_config(config)
            if not validation.is_valid:
                self.logger.error(
                    "Refusing to save invalid config", errors=validation.errors
                )
                return False

            try:
                if os.path.exists(target_path):
                    os.replace(target_path, f"{target_path}.backup")
                config.to_file(target_path)
            except OSError as e:
                self.logger.error("Error saving config", path=target_path, error=str(e))
                return False

            self.current_config = config
            self.config_file = target_path
            return True

    def validate_config(self, config: SystemConfiguration) -> ConfigValidationResult:
        """
        Validate configuration against business rules the model cannot express.

        Args:
            config: Configuration to validate

        Returns:
            ConfigValidationResult with validation details
        """
        result = ConfigValidationResult()

        execution = config.execution
        if execution["cancel_grace_seconds"] >= execution["timeout_seconds"]:
            result.add_error("Cancel grace period must be shorter than the task timeout")
        if execution["timeout_seconds"] < 60:
            result.add_warning("Task timeout is under a minute")

        if config.retry["default_max_retries"] == 0:
            result.add_warning("Automatic retries are disabled")

        for name, settings in config.agents.items():
            path = settings.get("executable_path")
            if path and not os.path.exists(os.path.expanduser(path)):
                result.add_warning(f"Executable for {name} not found: {path}")

        if not any(settings.get("default_model") for settings in config.agents.values()):
            result.add_warning("No agent has a default model; tasks must name one")

        return result

    def update_config_setting(
        self, section: str, key: str, value: Any, save_immediately: bool = True
    ) -> bool:
        """
        Update a specific configuration setting.

        Returns:
            True if update was successful
        """
        with self._lock:
            if self.current_config is None:
                return False

            try:
                self.current_config.update_setting(section, key, value)
            except (ValueError, ValidationError) as e:
                self.logger.error(
                    "Error updating config setting",
                    setting=f"{section}.{key}",
                    error=str(e),
                )
                return False

            if save_immediately and self.config_file:
                return self.save_config(self.current_config)
            return True

    def get_config_summary(self) -> Dict[str, Any]:
        """Get summary of current configuration."""
        if self.current_config is None:
            return {"status": "no_config_loaded"}

        config = self.current_config
        return {
            "config_file": self.config_file,
            "log_level": config.log_level.value,
            "data_directory": config.get_data_directory(),
            "task_timeout_seconds": config.execution["timeout_seconds"],
            "default_max_retries": config.retry["default_max_retries"],
            "backoff_base_seconds": config.retry["backoff_base_seconds"],
            "agents": {
                name: settings.get("default_model")
                for name, settings in config.agents.items()
            },
            "last_modified": config.last_modified,
        }

    def __str__(self) -> str:
        """String representation of the config manager."""
        config_file = os.path.basename(self.config_file) if self.config_file else "None"
        has_config = self.current_config is not None

        return f"ConfigManager(file={config_file}, loaded={has_config})"
