"""Integration tests for CLITransport and the real runners.

Agent CLIs are replaced by small Python scripts (see the ``fake_cli``
fixture) that speak the same stream formats.
"""

import os
import threading
import time

import pytest

from agent_queue.exceptions import TransportError
from agent_queue.models.queued_task import (
    AgentType,
    ApprovalState,
    FailureKind,
    QueuedTask,
    TaskStatus,
)
from agent_queue.models.run_event import (
    RunCancelled,
    RunCompleted,
    RunFailed,
    SessionStarted,
    ToolUse,
    is_terminal,
)
from agent_queue.models.system_configuration import SystemConfiguration
from agent_queue.services.claude_task_runner import ClaudeTaskRunner
from agent_queue.services.cli_transport import CLITransport
from agent_queue.services.opencode_task_runner import OpenCodeTaskRunner
from agent_queue.services.task_orchestrator import TaskOrchestrator
from agent_queue.services.task_queue_state import TaskQueueState

FAKE_CLAUDE = """
import json
import sys

request = json.loads(sys.stdin.readline())
prompt = request["message"]["content"][0]["text"]

def send(payload):
    print(json.dumps(payload), flush=True)

send({"type": "system", "subtype": "init", "session_id": "sess-42"})
send({"type": "assistant", "message": {"content": [
    {"type": "tool_use", "id": "tu-1", "name": "Bash", "input": {"command": "git push"}}]}})
send({"type": "stream_event", "event": {"type": "message_stop"}})
send({"type": "result", "subtype": "success", "session_id": "sess-42", "result": "echo: " + prompt})
"""

FAKE_OPENCODE = """
import json
import sys

def send(payload):
    print(json.dumps(payload), flush=True)

prompt = sys.argv[-1]
send({"type": "step_start", "sessionID": "ses_7", "part": {}})
send({"type": "text", "sessionID": "ses_7", "part": {"text": "did: " + prompt}})
send({"type": "step_finish", "sessionID": "ses_7", "part": {"reason": "stop"}})
"""

CRASHING_CLI = """
import sys
sys.stderr.write("fatal: something broke\\n")
sys.exit(2)
"""

STUBBORN_CLI = """
import signal
import sys
import time

signal.signal(signal.SIGINT, signal.SIG_IGN)
print("started", flush=True)
time.sleep(30)
"""


def collect(stream, timeout=10.0):
    events = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        event = stream.next_event(timeout=0.1)
        if event is None:
            continue
        events.append(event)
        if is_terminal(event):
            break
    return events


def config_with(**executables):
    config = SystemConfiguration(execution={"cancel_grace_seconds": 0.3})
    for agent, path in executables.items():
        config.update_setting("agents", f"{agent}.executable_path", path)
    return config


class TestCLITransport:
    """Test the process transport directly."""

    @pytest.mark.integration
    def test_lines_and_exit_are_delivered(self, fake_cli):
        path = fake_cli("print('one')\nprint('')\nprint('two')\n")
        lines, exits = [], []
        transport = CLITransport([path], use_stdin=False)
        transport.start(on_line=lines.append, on_exit=lambda code, tail: exits.append(code))

        assert transport.wait(timeout=10)
        assert lines == ["one", "two"]
        assert exits == [0]
        assert not transport.is_running

    @pytest.mark.integration
    def test_stderr_tail_is_captured(self, fake_cli):
        path = fake_cli(CRASHING_CLI)
        exits = []
        transport = CLITransport([path], use_stdin=False)
        transport.start(on_line=lambda line: None, on_exit=lambda code, tail: exits.append((code, tail)))

        assert transport.wait(timeout=10)
        assert exits == [(2, "fatal: something broke")]

    @pytest.mark.integration
    def test_missing_executable(self, tmp_path):
        transport = CLITransport([str(tmp_path / "no-such-cli")])
        with pytest.raises(TransportError, match="CLI not found"):
            transport.start(on_line=lambda line: None, on_exit=lambda code, tail: None)

    @pytest.mark.integration
    def test_terminate_kills_process(self, fake_cli):
        path = fake_cli(STUBBORN_CLI)
        started = threading.Event()
        transport = CLITransport([path], use_stdin=False)
        transport.start(on_line=lambda line: started.set(), on_exit=lambda code, tail: None)
        assert started.wait(10)

        transport.terminate(timeout=2)
        assert transport.wait(timeout=10)
        assert not transport.is_running

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            CLITransport([])


class TestRunnersWithFakeCLI:
    """Test the real runners against scripted CLIs."""

    @pytest.mark.integration
    def test_claude_runner_streams_to_result(self, tmp_path, fake_cli):
        runner = ClaudeTaskRunner(config_with(claude=fake_cli(FAKE_CLAUDE)))
        task = QueuedTask(title="t", prompt="hello", repo_path=str(tmp_path))
        runner.preflight(task)

        events = collect(runner.start(task))

        assert events[0] == SessionStarted("sess-42")
        assert ToolUse("Bash", '{"command": "git push"}', "tu-1") in events
        assert events[-1] == RunCompleted("echo: hello", session_id="sess-42")

    @pytest.mark.integration
    def test_opencode_runner_streams_to_result(self, tmp_path, fake_cli):
        runner = OpenCodeTaskRunner(config_with(opencode=fake_cli(FAKE_OPENCODE)))
        task = QueuedTask(
            title="t", prompt="tidy up", repo_path=str(tmp_path), agent_type=AgentType.OPENCODE
        )
        events = collect(runner.start(task, model="anthropic/claude-sonnet-4"))
        assert events[-1] == RunCompleted("did: tidy up", session_id="ses_7")

    @pytest.mark.integration
    def test_crash_is_transient_failure(self, tmp_path, fake_cli):
        runner = ClaudeTaskRunner(config_with(claude=fake_cli(CRASHING_CLI)))
        task = QueuedTask(title="t", prompt="hello", repo_path=str(tmp_path))

        events = collect(runner.start(task))

        assert isinstance(events[-1], RunFailed)
        assert events[-1].failure_kind == FailureKind.TRANSIENT
        assert events[-1].message == "Process crashed: fatal: something broke"
        assert events[-1].exit_code == 2

    @pytest.mark.integration
    def test_cancel_escalates_to_force(self, tmp_path, fake_cli):
        runner = ClaudeTaskRunner(config_with(claude=fake_cli(STUBBORN_CLI)))
        task = QueuedTask(title="t", prompt="hello", repo_path=str(tmp_path))
        stream = runner.start(task)
        time.sleep(0.5)

        started = time.monotonic()
        assert runner.cancel(task.id)
        assert not runner.cancel(task.id)
        events = collect(stream)

        assert events[-1] == RunCancelled("cancelled by request")
        assert time.monotonic() - started < 8

    @pytest.mark.integration
    def test_cancel_ignores_other_task(self, tmp_path, fake_cli):
        runner = ClaudeTaskRunner(config_with(claude=fake_cli(STUBBORN_CLI)))
        task = QueuedTask(title="t", prompt="hello", repo_path=str(tmp_path))
        stream = runner.start(task)
        try:
            assert not runner.cancel("some-other-task")
        finally:
            runner.cancel(task.id)
            collect(stream)


class TestOrchestratorWithFakeCLI:
    """Full pipeline: queue state, orchestrator, runner and process."""

    @pytest.mark.integration
    def test_risky_run_approved_and_completed(self, tmp_path, fake_cli):
        config = config_with(claude=fake_cli(FAKE_CLAUDE))
        config.data_directory = str(tmp_path / "data")
        state = TaskQueueState(config=config)
        task = state.enqueue(title="push", prompt="ship it", repo_path=str(tmp_path))

        orchestrator = TaskOrchestrator(state, config)
        orchestrator.add_event_callback(
            "approval_required", lambda data: state.approve(data["task_id"])
        )
        orchestrator.start()
        try:
            assert orchestrator.wait_until_idle(timeout=15)
        finally:
            orchestrator.stop(timeout=5)

        final = state.get_task(task.id)
        assert final.status == TaskStatus.COMPLETED
        assert final.result_summary == "echo: ship it"
        assert final.session_id == "sess-42"
        assert final.approval_state == ApprovalState.APPROVED
        assert final.resolved_model == "sonnet"
        assert os.path.exists(final.log_artifact_path)
