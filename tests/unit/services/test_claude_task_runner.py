"""Tests for the Claude stream parser and command line."""

import json

from agent_queue.models.queued_task import ChatMode, FailureKind, QueuedTask
from agent_queue.models.run_event import (
    LogLine,
    Progress,
    RunCompleted,
    RunFailed,
    SessionStarted,
    ToolUse,
)
from agent_queue.services.claude_task_runner import (
    ClaudeStreamParser,
    ClaudeTaskRunner,
    parse_stream_line,
)


def line(payload) -> str:
    return json.dumps(payload)


class TestParseStreamLine:
    """Test NDJSON decoding."""

    def test_unwraps_stream_event(self):
        wrapped = line({"type": "stream_event", "event": {"type": "message_stop"}})
        assert parse_stream_line(wrapped) == {"type": "message_stop"}

    def test_rejects_noise(self):
        assert parse_stream_line("") is None
        assert parse_stream_line("not json") is None
        assert parse_stream_line("[1, 2]") is None
        assert parse_stream_line(line({"no_type": True})) is None
        assert parse_stream_line(line({"type": "stream_event", "event": "x"})) is None


class TestClaudeStreamParser:
    """Test mapping of Claude stream messages to run events."""

    def setup_method(self):
        self.parser = ClaudeStreamParser()

    def test_session_started_once(self):
        init = line({"type": "system", "subtype": "init", "session_id": "sess-1"})
        assert self.parser.feed(init) == [SessionStarted("sess-1")]
        assert self.parser.feed(init) == [LogLine("system init")]

    def test_assistant_tool_use_deduplicated(self):
        message = line(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Pushing now"},
                        {
                            "type": "tool_use",
                            "id": "tool-1",
                            "name": "Bash",
                            "input": {"command": "git push"},
                        },
                    ]
                },
            }
        )
        events = self.parser.feed(message)
        assert events[0] == LogLine("assistant text (len=11)")
        assert events[1] == ToolUse("Bash", '{"command": "git push"}', "tool-1")
        assert self.parser.feed(message) == [LogLine("assistant text (len=11)")]

    def test_streamed_tool_input_is_assembled(self):
        events = []
        for payload in (
            {"type": "content_block_start", "index": 1,
             "content_block": {"type": "tool_use", "id": "tool-2", "name": "Write"}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": '{"file_path": "/r'}},
            {"type": "content_block_delta", "index": 1,
             "delta": {"type": "input_json_delta", "partial_json": 'epo/.env"}'}},
            {"type": "content_block_stop", "index": 1},
        ):
            events.extend(self.parser.feed(line({"type": "stream_event", "event": payload})))

        tool_uses = [e for e in events if isinstance(e, ToolUse)]
        assert tool_uses == [ToolUse("Write", '{"file_path": "/repo/.env"}', "tool-2")]

        # The full assistant message repeats the same call later.
        repeat = line(
            {"type": "assistant", "message": {"content": [
                {"type": "tool_use", "id": "tool-2", "name": "Write", "input": {}}]}}
        )
        assert self.parser.feed(repeat) == []

    def test_intermediate_events_are_not_terminal(self):
        for payload in (
            {"type": "message_start", "message": {"usage": {"input_tokens": 12}}},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
            {"type": "message_stop"},
        ):
            events = self.parser.feed(line(payload))
            assert all(isinstance(e, Progress) for e in events)

    def test_result_success(self):
        self.parser.feed(line({"type": "system", "session_id": "sess-1"}))
        events = self.parser.feed(line({"type": "result", "subtype": "success", "result": "Done."}))
        assert events == [RunCompleted("Done.", session_id="sess-1")]

    def test_result_error_is_classified(self):
        events = self.parser.feed(
            line({"type": "result", "is_error": True, "result": "API Error: 429 rate limit"})
        )
        assert len(events) == 1
        assert isinstance(events[0], RunFailed)
        assert events[0].failure_kind == FailureKind.TRANSIENT

    def test_non_json_output_is_logged(self):
        assert self.parser.feed("Loading...") == [LogLine("stdout: Loading...")]
        assert self.parser.feed("   ") == []

    def test_tool_result_logged(self):
        events = self.parser.feed(
            line({"type": "user", "message": {"content": [
                {"type": "tool_result", "tool_use_id": "tool-1", "is_error": True}]}})
        )
        assert events == [LogLine("tool_result id=tool-1 is_error=True")]


class TestClaudeCommand:
    """Test command line construction."""

    def test_build_command(self, tmp_path):
        task = QueuedTask(title="t", prompt="p", repo_path=str(tmp_path))
        command = ClaudeTaskRunner().build_command("/bin/claude", task, "sonnet")
        assert command[:2] == ["/bin/claude", "-p"]
        assert command[command.index("--output-format") + 1] == "stream-json"
        assert command[command.index("--model") + 1] == "sonnet"
        assert "--permission-mode" not in command

    def test_plan_mode(self, tmp_path):
        task = QueuedTask(title="t", prompt="p", repo_path=str(tmp_path), mode=ChatMode.PLAN)
        command = ClaudeTaskRunner().build_command("/bin/claude", task, "sonnet")
        assert command[-2:] == ["--permission-mode", "plan"]
