"""Typed events emitted by a task runner during one attempt.

Runners translate provider-specific stream output into these events. The
orchestrator consumes them in order and decides completion exclusively
through ``is_terminal``: tool invocations, partial content and step markers
never end a run.
"""

from dataclasses import dataclass
from typing import Optional

from .queued_task import FailureKind


@dataclass(frozen=True)
class RunEvent:
    """Base class for runner events."""

    def describe(self) -> str:
        return self.__class__.__name__


@dataclass(frozen=True)
class LogLine(RunEvent):
    text: str

    def describe(self) -> str:
        return self.text


@dataclass(frozen=True)
class SessionStarted(RunEvent):
    session_id: str

    def describe(self) -> str:
        return f"session started, session_id={self.session_id}"


@dataclass(frozen=True)
class Progress(RunEvent):
    """Non-terminal step marker."""

    text: str

    def describe(self) -> str:
        return f"progress: {self.text}"


@dataclass(frozen=True)
class ToolUse(RunEvent):
    """A tool invocation with its complete input."""

    tool_name: str
    tool_input: str = ""
    tool_id: Optional[str] = None

    def describe(self) -> str:
        return f"tool_use name={self.tool_name} input_len={len(self.tool_input)}"


@dataclass(frozen=True)
class RunCompleted(RunEvent):
    summary: str = ""
    session_id: Optional[str] = None

    def describe(self) -> str:
        return f"result (len={len(self.summary)})"


@dataclass(frozen=True)
class RunFailed(RunEvent):
    message: str
    failure_kind: FailureKind = FailureKind.PERMANENT
    exit_code: Optional[int] = None
    stderr: str = ""

    def describe(self) -> str:
        return f"error ({self.failure_kind.value}): {self.message}"


@dataclass(frozen=True)
class RunCancelled(RunEvent):
    reason: str = "cancelled"

    def describe(self) -> str:
        return f"cancelled: {self.reason}"


TERMINAL_EVENT_TYPES = (RunCompleted, RunFailed, RunCancelled)


def is_terminal(event: Optional[RunEvent]) -> bool:
    """Return True only for events that end a run."""
    return isinstance(event, TERMINAL_EVENT_TYPES)
