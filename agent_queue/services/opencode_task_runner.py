"""OpenCode CLI adapter.

Runs ``opencode run --format json`` with the prompt as an argument. A step
that finishes with reason ``stop`` is the final result; every other step
boundary is progress.
"""

import json
from typing import Any, Dict, List, Optional

from ..models.queued_task import RESULT_SUMMARY_LIMIT, AgentType, QueuedTask
from ..models.run_event import (
    LogLine,
    Progress,
    RunCompleted,
    RunEvent,
    RunFailed,
    SessionStarted,
    ToolUse,
)
from .failure_classifier import classify_failure_message
from .task_runner import TaskRunner


def parse_opencode_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one NDJSON line; None for blank, non-JSON or untyped lines."""
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        return None
    return payload


def _error_message(payload: Dict[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        data = error.get("data") or {}
        message = data.get("message") if isinstance(data, dict) else None
        return message or error.get("message") or error.get("name") or "OpenCode error"
    return "OpenCode error"


class OpenCodeStreamParser:
    """Stateful mapping of one attempt's OpenCode stream to run events."""

    def __init__(self):
        self.session_id: Optional[str] = None
        self._step_text: List[str] = []

    def feed(self, line: str) -> List[RunEvent]:
        payload = parse_opencode_line(line)
        if payload is None:
            text = line.strip()
            return [LogLine(f"stdout: {text[:500]}")] if text else []

        events: List[RunEvent] = []
        session_id = payload.get("sessionID")
        if session_id and self.session_id is None:
            self.session_id = session_id
            events.append(SessionStarted(session_id))

        part = payload.get("part") or {}
        event_type = payload["type"]

        if event_type == "step_start":
            self._step_text = []
            events.append(Progress("step_start"))
        elif event_type == "text":
            text = part.get("text") or ""
            self._step_text.append(text)
            events.append(LogLine(f"text (len={len(text)})"))
        elif event_type == "tool_use":
            state = part.get("state") or {}
            tool_input = state.get("input")
            events.append(
                ToolUse(
                    part.get("tool") or "",
                    json.dumps(tool_input, ensure_ascii=False) if tool_input else "",
                    part.get("callID") or part.get("id"),
                )
            )
        elif event_type == "step_finish":
            reason = part.get("reason") or ""
            if reason == "stop":
                summary = "".join(self._step_text)[:RESULT_SUMMARY_LIMIT]
                events.append(RunCompleted(summary, session_id=self.session_id))
            else:
                events.append(Progress(f"step_finish reason={reason}"))
        elif event_type == "error":
            message = _error_message(payload)
            classification = classify_failure_message(message)
            events.append(RunFailed(message, failure_kind=classification.failure_kind))
        else:
            events.append(LogLine(f"event {event_type}"))
        return events


class OpenCodeTaskRunner(TaskRunner):
    """Headless runner for the OpenCode CLI."""

    agent_type = AgentType.OPENCODE
    executable_name = "opencode"
    env_var = "OPENCODE_PATH"
    use_stdin = False

    def __init__(self, config=None):
        super().__init__(config)
        self.parser = OpenCodeStreamParser()

    def build_command(self, executable: str, task: QueuedTask, model: str) -> List[str]:
        command = [executable, "run", "--format", "json"]
        if model:
            command.extend(["--model", model])
        if task.mode is not None:
            command.extend(["--agent", task.mode.value])
        command.append(task.prompt)
        return command

    def reset(self) -> None:
        self.parser = OpenCodeStreamParser()

    def handle_line(self, line: str) -> List[RunEvent]:
        return self.parser.feed(line)
