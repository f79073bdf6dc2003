"""Tests for the runner base: run streams, cancellation and preflight."""

import threading
import time

import pytest

from agent_queue.exceptions import ModelResolutionError, PreflightError
from agent_queue.models.queued_task import AgentType, FailureKind, ModelSelection, QueuedTask
from agent_queue.models.run_event import (
    LogLine,
    Progress,
    RunCancelled,
    RunCompleted,
    RunFailed,
    ToolUse,
    is_terminal,
)
from agent_queue.models.system_configuration import SystemConfiguration
from agent_queue.services.claude_task_runner import ClaudeTaskRunner
from agent_queue.services.opencode_task_runner import OpenCodeTaskRunner
from agent_queue.services.task_runner import (
    CancellationToken,
    RunStream,
    create_runner,
)


class TestRunEvents:
    """Test terminal event detection."""

    def test_only_results_are_terminal(self):
        assert is_terminal(RunCompleted("done"))
        assert is_terminal(RunFailed("boom"))
        assert is_terminal(RunCancelled())
        for event in (LogLine("x"), Progress("message_stop"), ToolUse("Bash"), None):
            assert not is_terminal(event)


class TestRunStream:
    """Test the ordered event channel."""

    def test_closes_after_first_terminal_event(self):
        stream = RunStream()
        assert stream.emit(LogLine("a"))
        assert stream.emit(RunCompleted("done"))
        assert stream.closed
        assert not stream.emit(RunFailed("late"))

        assert list(stream) == [LogLine("a"), RunCompleted("done")]

    def test_next_event_timeout(self):
        stream = RunStream()
        started = time.monotonic()
        assert stream.next_event(timeout=0.05) is None
        assert time.monotonic() - started < 1.0
        assert stream.next_event(timeout=-1) is None

    def test_cross_thread_delivery(self):
        stream = RunStream()
        threading.Timer(0.05, stream.emit, args=(RunCompleted("later"),)).start()
        assert stream.next_event(timeout=2.0) == RunCompleted("later")


class TestCancellationToken:
    """Test two-phase cancellation."""

    def test_escalates_when_still_alive(self):
        calls = []
        token = CancellationToken(grace_seconds=0.05)
        assert token.request(
            graceful=lambda: calls.append("graceful"),
            force=lambda: calls.append("force"),
            is_alive=lambda: True,
        )
        time.sleep(0.3)
        assert calls == ["graceful", "force"]
        assert token.escalated

    def test_no_escalation_once_exited(self):
        calls = []
        token = CancellationToken(grace_seconds=0.05)
        token.request(lambda: calls.append("graceful"), lambda: calls.append("force"), lambda: False)
        time.sleep(0.3)
        assert calls == ["graceful"]
        assert not token.escalated

    def test_dispose_disarms_timer(self):
        calls = []
        token = CancellationToken(grace_seconds=0.1)
        token.request(lambda: None, lambda: calls.append("force"), lambda: True)
        token.dispose()
        time.sleep(0.3)
        assert calls == []

    def test_second_request_is_ignored(self):
        token = CancellationToken(grace_seconds=5)
        assert token.request(lambda: None, lambda: None, lambda: False)
        assert not token.request(lambda: None, lambda: None, lambda: False)
        assert token.requested
        token.dispose()


class TestPreflight:
    """Test validation before spawning."""

    def setup_method(self):
        self.config = SystemConfiguration()

    def make_task(self, tmp_path, **overrides):
        fields = {"title": "Task", "prompt": "Do it", "repo_path": str(tmp_path)}
        fields.update(overrides)
        return QueuedTask(**fields)

    def test_empty_prompt(self, tmp_path):
        runner = ClaudeTaskRunner(self.config)
        with pytest.raises(PreflightError, match="prompt is empty"):
            runner.preflight(self.make_task(tmp_path, prompt="   "))

    def test_missing_directory(self, tmp_path):
        runner = ClaudeTaskRunner(self.config)
        with pytest.raises(PreflightError, match="does not exist"):
            runner.preflight(self.make_task(tmp_path, repo_path=str(tmp_path / "gone")))

    def test_terminal_agent_rejected(self, tmp_path):
        task = self.make_task(tmp_path, agent_type=AgentType.TERMINAL)
        runner = create_runner(task, self.config)
        with pytest.raises(PreflightError, match="headless"):
            runner.preflight(task)

    def test_missing_cli(self, tmp_path, monkeypatch):
        monkeypatch.setattr(ClaudeTaskRunner, "resolve_executable", lambda self: None)
        with pytest.raises(PreflightError, match="CLAUDE_PATH"):
            ClaudeTaskRunner(self.config).preflight(self.make_task(tmp_path))

    def test_configured_executable(self, tmp_path, fake_cli):
        path = fake_cli("print('hi')\n")
        self.config.update_setting("agents", "claude.executable_path", path)
        assert ClaudeTaskRunner(self.config).preflight(self.make_task(tmp_path)) == path

    def test_env_var_executable(self, tmp_path, fake_cli, monkeypatch):
        path = fake_cli("print('hi')\n", name="opencode-bin")
        monkeypatch.setenv("OPENCODE_PATH", path)
        assert OpenCodeTaskRunner(self.config).resolve_executable() == path


class TestResolveModel:
    """Test model resolution order."""

    def test_task_model_wins(self, tmp_path):
        task = QueuedTask(
            title="t", prompt="p", repo_path=str(tmp_path), model=ModelSelection.parse("opus")
        )
        assert ClaudeTaskRunner().resolve_model(task) == "opus"

    def test_backend_default(self, tmp_path):
        task = QueuedTask(title="t", prompt="p", repo_path=str(tmp_path))
        assert ClaudeTaskRunner().resolve_model(task) == "sonnet"

    def test_no_model_available(self, tmp_path):
        task = QueuedTask(
            title="t", prompt="p", repo_path=str(tmp_path), agent_type=AgentType.OPENCODE
        )
        with pytest.raises(ModelResolutionError):
            OpenCodeTaskRunner().resolve_model(task)


def test_create_runner_by_agent(tmp_path):
    claude = QueuedTask(title="t", prompt="p", repo_path=str(tmp_path))
    opencode = QueuedTask(
        title="t", prompt="p", repo_path=str(tmp_path), agent_type=AgentType.OPENCODE
    )
    assert isinstance(create_runner(claude), ClaudeTaskRunner)
    assert isinstance(create_runner(opencode), OpenCodeTaskRunner)


class TestHandleExit:
    """Test the event for a process that exits without a result."""

    def test_crash_is_classified_transient(self):
        event = ClaudeTaskRunner(SystemConfiguration()).handle_exit(3, "  segfault\n")
        assert isinstance(event, RunFailed)
        assert event.failure_kind == FailureKind.TRANSIENT
        assert event.message == "Process crashed: segfault"
        assert event.exit_code == 3

    def test_crash_without_stderr(self):
        event = ClaudeTaskRunner(SystemConfiguration()).handle_exit(137, "")
        assert event.message == "Process crashed (exit code 137)"

    def test_clean_exit_without_result(self):
        event = ClaudeTaskRunner(SystemConfiguration()).handle_exit(0, "")
        assert event == RunCancelled("process exited without a result")
