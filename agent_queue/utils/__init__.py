"""Utility modules for the agent task queue."""

from .logging import (
    ContextLogger,
    StructuredLogger,
    configure_default_logger,
    get_default_logger,
    get_logger,
    set_console_level,
)

__all__ = [
    "StructuredLogger",
    "get_logger",
    "configure_default_logger",
    "get_default_logger",
    "set_console_level",
    "ContextLogger",
]
