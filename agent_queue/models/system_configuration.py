"""SystemConfiguration model for the agent task queue.

Represents global settings: logging, storage locations, execution limits,
retry policy and per-agent backend settings (default model and custom
executable path).
"""

import json
import os
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ARTIFACT_MAX_BYTES = 5 * 1024 * 1024
DATA_DIR_ENV_VAR = "AGENT_QUEUE_DATA_DIR"


class LogLevel(str, Enum):
    """Available log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


def _default_execution() -> Dict[str, Any]:
    return {
        "timeout_seconds": 1800,
        "cancel_grace_seconds": 10.0,
        "poll_interval": 0.25,
        "idle_interval": 5.0,
    }


def _default_retry() -> Dict[str, Any]:
    return {
        "default_max_retries": 3,
        "backoff_base_seconds": 2.0,
        "backoff_max_seconds": 300.0,
    }


def _default_persistence() -> Dict[str, Any]:
    return {
        "queue_file": "queue.json",
        "save_debounce_seconds": 1.0,
    }


def _default_logs() -> Dict[str, Any]:
    return {
        "artifact_max_bytes": DEFAULT_ARTIFACT_MAX_BYTES,
        "live_window_lines": 500,
    }


def _default_agents() -> Dict[str, Dict[str, Any]]:
    return {
        "claude": {"default_model": "sonnet", "executable_path": None},
        "opencode": {"default_model": None, "executable_path": None},
    }


def _merge_section(defaults: Dict[str, Any], value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        defaults.update(value)
    return defaults


class SystemConfiguration(BaseModel):
    """Model representing system configuration settings."""

    config_version: str = Field(default="1.0.0")
    last_modified: Optional[str] = Field(default=None)

    # Application logging
    log_level: LogLevel = Field(default=LogLevel.INFO)
    log_file_path: Optional[str] = Field(default=None)
    max_log_size_mb: int = Field(default=10, ge=1, le=1000)
    backup_count: int = Field(default=3, ge=0, le=10)

    # Root for queue.json, task logs and config.json
    data_directory: Optional[str] = Field(default=None)

    execution: Dict[str, Any] = Field(default_factory=_default_execution)
    retry: Dict[str, Any] = Field(default_factory=_default_retry)
    persistence: Dict[str, Any] = Field(default_factory=_default_persistence)
    logs: Dict[str, Any] = Field(default_factory=_default_logs)
    agents: Dict[str, Dict[str, Any]] = Field(default_factory=_default_agents)

    model_config = ConfigDict(validate_assignment=True)

    @field_validator("log_level", mode="before")
    def normalize_log_level(cls, value: Any) -> LogLevel:
        """Ensure log level values resolve to LogLevel enum members."""
        if isinstance(value, LogLevel):
            return value
        if isinstance(value, str):
            normalized = value.upper()
            if normalized == "WARN":
                normalized = "WARNING"
            try:
                return LogLevel(normalized)
            except ValueError as exc:
                raise ValueError(f"Invalid log level: {value}") from exc
        raise ValueError("Log level must be a string or LogLevel enum")

    @field_validator("execution", mode="before")
    def merge_execution_defaults(cls, v):
        return _merge_section(_default_execution(), v)

    @field_validator("retry", mode="before")
    def merge_retry_defaults(cls, v):
        return _merge_section(_default_retry(), v)

    @field_validator("persistence", mode="before")
    def merge_persistence_defaults(cls, v):
        return _merge_section(_default_persistence(), v)

    @field_validator("logs", mode="before")
    def merge_logs_defaults(cls, v):
        return _merge_section(_default_logs(), v)

    @field_validator("agents", mode="before")
    def merge_agent_defaults(cls, v):
        merged = _default_agents()
        if isinstance(v, dict):
            for name, settings in v.items():
                merged[name] = _merge_section(
                    merged.get(name, {"default_model": None, "executable_path": None}),
                    settings,
                )
        return merged

    @field_validator("execution")
    def validate_execution(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Validate execution limits."""
        if not 0 < v["timeout_seconds"] <= 24 * 3600:
            raise ValueError("Task timeout must be between 0 and 86400 seconds")
        if not 0 <= v["cancel_grace_seconds"] <= 300:
            raise ValueError("Cancel grace period must be between 0 and 300 seconds")
        if not 0 < v["poll_interval"] <= 10:
            raise ValueError("Poll interval must be between 0 and 10 seconds")
        if not 0 < v["idle_interval"] <= 3600:
            raise ValueError("Idle interval must be between 0 and 3600 seconds")
        return v

    @field_validator("retry")
    def validate_retry(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Validate retry policy."""
        if not 0 <= v["default_max_retries"] <= 100:
            raise ValueError("Default max retries must be between 0 and 100")
        if v["backoff_base_seconds"] < 0:
            raise ValueError("Backoff base cannot be negative")
        if v["backoff_max_seconds"] < v["backoff_base_seconds"]:
            raise ValueError("Backoff max must not be below the backoff base")
        return v

    @field_validator("persistence")
    def validate_persistence(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v.get("queue_file"):
            raise ValueError("Queue file name cannot be empty")
        if not 0 <= v["save_debounce_seconds"] <= 60:
            raise ValueError("Save debounce must be between 0 and 60 seconds")
        return v

    @field_validator("logs")
    def validate_logs(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if v["artifact_max_bytes"] < 1024:
            raise ValueError("Log artifact cap must be at least 1024 bytes")
        if not 10 <= v["live_window_lines"] <= 100000:
            raise ValueError("Live window must be between 10 and 100000 lines")
        return v

    # ------------------------------------------------------------------ #
    # Paths
    # ------------------------------------------------------------------ #
    def get_data_directory(self) -> str:
        """Get the resolved data directory, creating it if needed."""
        configured = self.data_directory or os.environ.get(DATA_DIR_ENV_VAR)
        if configured:
            data_dir = os.path.expandvars(os.path.expanduser(configured))
        elif os.name == "nt":
            data_dir = os.path.expandvars("%LOCALAPPDATA%\\agent-queue")
        else:
            data_dir = os.path.expanduser("~/.agent-queue")

        os.makedirs(data_dir, exist_ok=True)
        return data_dir

    def get_tasks_directory(self) -> str:
        tasks_dir = os.path.join(self.get_data_directory(), "tasks")
        os.makedirs(tasks_dir, exist_ok=True)
        return tasks_dir

    def get_queue_file_path(self) -> str:
        queue_file = self.persistence["queue_file"]
        if os.path.isabs(queue_file):
            return queue_file
        return os.path.join(self.get_tasks_directory(), queue_file)

    def get_task_logs_directory(self) -> str:
        return os.path.join(self.get_tasks_directory(), "logs")

    def get_inbox_directory(self) -> str:
        """Where other processes leave queue changes for the running queue."""
        return os.path.join(self.get_tasks_directory(), "inbox")

    def get_run_lock_path(self) -> str:
        return os.path.join(self.get_tasks_directory(), "run.lock")

    def get_log_file_path(self) -> str:
        """Get the resolved application log file path."""
        if self.log_file_path:
            return os.path.expandvars(os.path.expanduser(self.log_file_path))
        return os.path.join(self.get_data_directory(), "agent-queue.log")

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #
    def get_agent_settings(self, agent: str) -> Dict[str, Any]:
        """Settings block for an agent backend (empty defaults if unknown)."""
        key = getattr(agent, "value", agent)
        return dict(
            self.agents.get(key, {"default_model": None, "executable_path": None})
        )

    @property
    def execution_timeout(self) -> float:
        return float(self.execution["timeout_seconds"])

    @property
    def cancel_grace_seconds(self) -> float:
        return float(self.execution["cancel_grace_seconds"])

    def update_setting(self, section: str, key: str, value: Any) -> None:
        """Update a configuration setting."""
        if section in ("execution", "retry", "persistence", "logs"):
            updated = dict(getattr(self, section))
            updated[key] = value
            setattr(self, section, updated)
        elif section == "agents":
            agent, _, field = key.partition(".")
            if not field:
                raise ValueError(f"Agent settings need 'agent.field', got: {key}")
            agents = {name: dict(values) for name, values in self.agents.items()}
            agents.setdefault(agent, {})[field] = value
            self.agents = agents
        elif hasattr(self, key):
            setattr(self, key, value)
        else:
            raise ValueError(f"Unknown setting: {section}.{key}")

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    @classmethod
    def create_default(cls) -> "SystemConfiguration":
        """Create a default configuration instance."""
        return cls()

    @classmethod
    def from_file(cls, file_path: str) -> "SystemConfiguration":
        """Load configuration from JSON file; missing keys take defaults."""
        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(**data)

    def to_file(self, file_path: str) -> None:
        """Save configuration to JSON file."""
        self.last_modified = datetime.now().isoformat()

        directory = os.path.dirname(file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2, ensure_ascii=False)

    def __str__(self) -> str:
        return (
            f"SystemConfiguration("
            f"log_level={self.log_level.value}, "
            f"timeout={self.execution['timeout_seconds']}s, "
            f"max_retries={self.retry['default_max_retries']}"
            f")"
        )
