"""Application log file configuration with safe rotation."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from ..models.system_configuration import SystemConfiguration
from ..utils.logging import ROOT_LOGGER_NAME, StructuredFormatter


class SafeRotatingFileHandler(RotatingFileHandler):
    """Rotating handler that keeps writing when a rollover fails."""

    def doRollover(self) -> None:
        try:
            super().doRollover()
        except OSError as exc:
            logging.getLogger(__name__).warning("Log rotation failed: %s", exc)


class LoggingConfig:
    """Attach a rotating JSON log file to the package logger."""

    def __init__(
        self,
        log_file: str,
        *,
        max_size_mb: int = 10,
        backup_count: int = 3,
        level: str = "INFO",
        logger_name: str = ROOT_LOGGER_NAME,
    ):
        self.log_file = Path(log_file).expanduser()
        self.max_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.level = level
        self.logger_name = logger_name
        self._handler: Optional[SafeRotatingFileHandler] = None

    @classmethod
    def from_config(cls, config: SystemConfiguration) -> "LoggingConfig":
        return cls(
            config.get_log_file_path(),
            max_size_mb=config.max_log_size_mb,
            backup_count=config.backup_count,
            level=config.log_level.value,
        )

    def apply(self) -> logging.Logger:
        """Install the file handler once and return the configured logger."""
        logger = logging.getLogger(self.logger_name)
        if self._handler is not None:
            return logger

        for handler in logger.handlers:
            if (
                isinstance(handler, SafeRotatingFileHandler)
                and Path(handler.baseFilename) == self.log_file.resolve()
            ):
                self._handler = handler
                return logger

        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = SafeRotatingFileHandler(
                filename=str(self.log_file),
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            )
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "File logging disabled due to error: %s", exc
            )
            return logger

        handler.setFormatter(StructuredFormatter())
        handler.setLevel(getattr(logging, self.level.upper(), logging.INFO))
        logger.addHandler(handler)
        self._handler = handler
        return logger

    def remove(self) -> None:
        """Detach and close the file handler installed by ``apply``."""
        if self._handler is None:
            return
        logging.getLogger(self.logger_name).removeHandler(self._handler)
        self._handler.close()
        self._handler = None
