"""Structured logging utilities for the agent task queue.

Every service logs through a StructuredLogger, which renders one JSON object
per record: timestamp, level, logger, message, the logger's persistent
context (for example ``service``) and any per-call keyword fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "agent_queue"


class _ConsoleHandler(logging.StreamHandler):
    """Stream handler bound to whatever ``sys.stderr`` is at emit time."""

    @property
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value):
        pass


def _root_logger() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not any(isinstance(h, _ConsoleHandler) for h in root.handlers):
        console = _ConsoleHandler()
        console.setFormatter(StructuredFormatter())
        console.setLevel(logging.WARNING)
        root.addHandler(console)
        root.setLevel(logging.DEBUG)
    return root


class StructuredLogger:
    """Structured logger with context support."""

    def __init__(self, name: str, log_file: Optional[str] = None):
        """Initialize structured logger.

        Args:
            name: Logger name (usually __name__)
            log_file: Optional log file path
        """
        _root_logger()
        self.logger = logging.getLogger(name)
        self.context: Dict[str, Any] = {}

        if log_file:
            self._attach_file(Path(log_file).expanduser())

    def _attach_file(self, file_path: Path) -> None:
        for handler in self.logger.handlers:
            if getattr(handler, "_structured_log_path", None) == str(file_path):
                return
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setFormatter(StructuredFormatter())
        file_handler._structured_log_path = str(file_path)  # type: ignore[attr-defined]
        self.logger.addHandler(file_handler)

    def set_level(self, level: str) -> None:
        """Set logging level.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        self.logger.setLevel(getattr(logging, level.upper()))

    def add_context(self, **kwargs: Any) -> None:
        """Add persistent context to all log messages."""
        self.context.update(kwargs)

    def remove_context(self, *keys: str) -> None:
        for key in keys:
            self.context.pop(key, None)

    def clear_context(self) -> None:
        self.context.clear()

    def _log(
        self, level: int, message: str, exc_info: bool = False, **kwargs: Any
    ) -> None:
        record: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": logging.getLevelName(level),
            "logger": self.logger.name,
            "message": message,
        }
        record.update(self.context)
        record.update(kwargs)
        if exc_info:
            exc_type, exc_value, _ = sys.exc_info()
            if exc_type is not None:
                record["exception"] = f"{exc_type.__name__}: {exc_value}"

        serialized = json.dumps(record, default=str)
        self.logger.log(level, serialized, extra={"structured_json": serialized})

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log an error with the exception currently being handled."""
        self._log(logging.ERROR, message, exc_info=True, **kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        self._log(logging.CRITICAL, message, **kwargs)


class StructuredFormatter(logging.Formatter):
    """Formatter that passes structured records through unchanged."""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "structured_json"):
            return record.structured_json  # type: ignore[return-value]

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ContextLogger:
    """Context manager for temporary logging context.

    Example:
        with ContextLogger(logger, task_id=task.id):
            logger.info("Task started")
    """

    def __init__(self, logger: StructuredLogger, **context: Any):
        self.logger = logger
        self.context = context
        self.previous_context: Dict[str, Any] = {}

    def __enter__(self) -> StructuredLogger:
        for key in self.context:
            if key in self.logger.context:
                self.previous_context[key] = self.logger.context[key]
        self.logger.add_context(**self.context)
        return self.logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.remove_context(*self.context.keys())
        if self.previous_context:
            self.logger.add_context(**self.previous_context)


def get_logger(name: str, log_file: Optional[str] = None) -> StructuredLogger:
    """Get a structured logger for a module.

    Args:
        name: Logger name
        log_file: Optional log file path

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(name, log_file)


def set_console_level(level: str) -> None:
    """Adjust how much of the package's logging reaches stderr."""
    root = _root_logger()
    for handler in root.handlers:
        if isinstance(handler, _ConsoleHandler):
            handler.setLevel(getattr(logging, level.upper()))


_default_logger: Optional[StructuredLogger] = None


def configure_default_logger(
    level: str = "INFO", log_file: Optional[str] = None
) -> StructuredLogger:
    """Configure the package-level logger.

    Args:
        level: Log level
        log_file: Optional log file path

    Returns:
        Configured logger
    """
    global _default_logger
    _default_logger = get_logger(ROOT_LOGGER_NAME, log_file)
    _default_logger.set_level(level)
    return _default_logger


def get_default_logger() -> StructuredLogger:
    global _default_logger
    if _default_logger is None:
        _default_logger = configure_default_logger()
    return _default_logger
