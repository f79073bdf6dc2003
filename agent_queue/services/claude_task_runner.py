"""Claude CLI adapter.

Runs ``claude -p`` with stream-json input and output, sends the prompt as
one user message and maps the NDJSON stream onto run events. Only the
``result`` message ends a run; tool calls, partial content and message
boundaries are intermediate.
"""

import json
from typing import Any, Dict, List, Optional, Set

from ..models.queued_task import RESULT_SUMMARY_LIMIT, AgentType, ChatMode, QueuedTask
from ..models.run_event import (
    LogLine,
    Progress,
    RunCompleted,
    RunEvent,
    RunFailed,
    SessionStarted,
    ToolUse,
)
from .cli_transport import CLITransport
from .failure_classifier import classify_failure_message
from .task_runner import TaskRunner


def parse_stream_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one NDJSON line, unwrapping ``stream_event`` envelopes.

    Returns:
        The event object, or None for blank or non-JSON lines
    """
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or not isinstance(payload.get("type"), str):
        return None
    if payload["type"] == "stream_event":
        inner = payload.get("event")
        if not isinstance(inner, dict) or not isinstance(inner.get("type"), str):
            return None
        return inner
    return payload


def _tool_input_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


class ClaudeStreamParser:
    """Stateful mapping of one attempt's Claude stream to run events."""

    def __init__(self):
        self.session_id: Optional[str] = None
        self._seen_tool_ids: Set[str] = set()
        self._tool_name: Optional[str] = None
        self._tool_id: Optional[str] = None
        self._tool_input: List[str] = []

    def feed(self, line: str) -> List[RunEvent]:
        event = parse_stream_line(line)
        if event is None:
            text = line.strip()
            return [LogLine(f"stdout: {text[:500]}")] if text else []

        handler = getattr(self, f"_on_{event['type']}", None)
        if handler is None:
            return [LogLine(f"event {event['type']}")]
        return handler(event)

    def _on_system(self, event: Dict[str, Any]) -> List[RunEvent]:
        session_id = event.get("session_id")
        if session_id and session_id != self.session_id:
            self.session_id = session_id
            return [SessionStarted(session_id)]
        return [LogLine(f"system {event.get('subtype', '')}".strip())]

    def _on_assistant(self, event: Dict[str, Any]) -> List[RunEvent]:
        message = event.get("message") or {}
        events: List[RunEvent] = []
        for block in message.get("content") or []:
            block_type = block.get("type")
            if block_type == "tool_use":
                tool_id = block.get("id")
                if tool_id and tool_id in self._seen_tool_ids:
                    continue
                if tool_id:
                    self._seen_tool_ids.add(tool_id)
                events.append(
                    ToolUse(
                        block.get("name") or "",
                        _tool_input_text(block.get("input")),
                        tool_id,
                    )
                )
            elif block_type == "text" and block.get("text"):
                events.append(LogLine(f"assistant text (len={len(block['text'])})"))
        return events

    def _on_user(self, event: Dict[str, Any]) -> List[RunEvent]:
        message = event.get("message") or {}
        events: List[RunEvent] = []
        content = message.get("content")
        if not isinstance(content, list):
            return events
        for block in content:
            if block.get("type") == "tool_result":
                events.append(
                    LogLine(
                        f"tool_result id={block.get('tool_use_id', '')} "
                        f"is_error={bool(block.get('is_error', False))}"
                    )
                )
        return events

    def _on_message_start(self, event: Dict[str, Any]) -> List[RunEvent]:
        usage = (event.get("message") or {}).get("usage") or {}
        return [Progress(f"message_start (input_tokens={usage.get('input_tokens', 0)})")]

    def _on_content_block_start(self, event: Dict[str, Any]) -> List[RunEvent]:
        block = event.get("content_block") or {}
        block_type = block.get("type", "text")
        if block_type == "tool_use":
            self._tool_name = block.get("name") or ""
            self._tool_id = block.get("id")
            self._tool_input = []
            return [LogLine(f"content_block_start idx={event.get('index', 0)} tool={self._tool_name}")]
        return [LogLine(f"content_block_start idx={event.get('index', 0)} type={block_type}")]

    def _on_content_block_delta(self, event: Dict[str, Any]) -> List[RunEvent]:
        delta = event.get("delta") or {}
        delta_type = delta.get("type", "text_delta")
        if delta_type == "input_json_delta":
            fragment = delta.get("partial_json") or ""
            if self._tool_name is not None:
                self._tool_input.append(fragment)
            text_len = len(fragment)
        else:
            text_len = len(delta.get("text") or delta.get("thinking") or "")
        return [LogLine(f"delta idx={event.get('index', 0)} type={delta_type} len={text_len}")]

    def _on_content_block_stop(self, event: Dict[str, Any]) -> List[RunEvent]:
        events: List[RunEvent] = [LogLine(f"content_block_stop idx={event.get('index', 0)}")]
        if self._tool_name is not None:
            tool_id = self._tool_id
            if not (tool_id and tool_id in self._seen_tool_ids):
                if tool_id:
                    self._seen_tool_ids.add(tool_id)
                events.append(ToolUse(self._tool_name, "".join(self._tool_input), tool_id))
            self._tool_name = None
            self._tool_id = None
            self._tool_input = []
        return events

    def _on_message_delta(self, event: Dict[str, Any]) -> List[RunEvent]:
        stop_reason = (event.get("delta") or {}).get("stop_reason")
        return [Progress(f"message_delta stop={stop_reason}")]

    def _on_message_stop(self, event: Dict[str, Any]) -> List[RunEvent]:
        return [Progress("message_stop")]

    def _on_result(self, event: Dict[str, Any]) -> List[RunEvent]:
        session_id = event.get("session_id") or self.session_id
        text = event.get("result")
        text = text if isinstance(text, str) else ""
        if event.get("is_error"):
            message = text or event.get("subtype") or "Agent reported an error"
            classification = classify_failure_message(message)
            return [RunFailed(message, failure_kind=classification.failure_kind)]
        return [RunCompleted(text[:RESULT_SUMMARY_LIMIT], session_id=session_id)]


class ClaudeTaskRunner(TaskRunner):
    """Headless runner for the Claude CLI."""

    agent_type = AgentType.CLAUDE
    executable_name = "claude"
    env_var = "CLAUDE_PATH"
    use_stdin = True

    def __init__(self, config=None):
        super().__init__(config)
        self.parser = ClaudeStreamParser()

    def build_command(self, executable: str, task: QueuedTask, model: str) -> List[str]:
        command = [
            executable,
            "-p",
            "--input-format",
            "stream-json",
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
            "--model",
            model,
        ]
        if task.mode == ChatMode.PLAN:
            command.extend(["--permission-mode", "plan"])
        return command

    def reset(self) -> None:
        self.parser = ClaudeStreamParser()

    def on_started(self, transport: CLITransport, task: QueuedTask, model: str) -> None:
        message = {
            "type": "user",
            "message": {
                "role": "user",
                "content": [{"type": "text", "text": task.prompt}],
            },
        }
        transport.send(json.dumps(message, ensure_ascii=False))

    def handle_line(self, line: str) -> List[RunEvent]:
        return self.parser.feed(line)
