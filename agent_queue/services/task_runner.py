"""TaskRunner base service for headless agent execution.

A runner turns one queued task into a live, cancellable stream of run
events. Subclasses supply the backend specifics (command line, how the
prompt is delivered, how output lines map to events); process lifecycle,
two-phase cancellation and exit handling live here.
"""

import os
import queue
import threading
from abc import ABC, abstractmethod
from typing import Callable, Iterator, List, Optional

from ..exceptions import (
    ModelResolutionError,
    PreflightError,
    TaskRunError,
    TransportError,
)
from ..models.queued_task import AgentType, FailureKind, QueuedTask
from ..models.run_event import (
    RunCancelled,
    RunEvent,
    RunFailed,
    is_terminal,
)
from ..models.system_configuration import SystemConfiguration
from ..utils.logging import get_logger
from .cli_transport import CLITransport, resolve_cli_path
from .failure_classifier import classify_process_crash

logger = get_logger(__name__)


class RunStream:
    """Ordered, thread-safe channel of run events for one attempt.

    Producers ``emit`` events; the stream closes itself after the first
    terminal event and silently drops anything emitted afterwards.
    """

    def __init__(self):
        self._queue: "queue.Queue[RunEvent]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def emit(self, event: RunEvent) -> bool:
        """Append an event.

        Returns:
            False if the stream was already closed
        """
        with self._lock:
            if self._closed:
                return False
            self._queue.put(event)
            if is_terminal(event):
                self._closed = True
            return True

    def next_event(self, timeout: Optional[float] = None) -> Optional[RunEvent]:
        """Return the next event, or None if none arrives within ``timeout``."""
        try:
            if timeout is None:
                return self._queue.get()
            return self._queue.get(timeout=max(0.0, timeout))
        except queue.Empty:
            return None

    def __iter__(self) -> Iterator[RunEvent]:
        while True:
            event = self._queue.get()
            yield event
            if is_terminal(event):
                return


class CancellationToken:
    """Two-phase stop request: graceful first, forced after a grace period."""

    def __init__(self, grace_seconds: float = 10.0):
        self.grace_seconds = grace_seconds
        self.escalated = False
        self._requested = threading.Event()
        self._disposed = False
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def requested(self) -> bool:
        return self._requested.is_set()

    def request(
        self,
        graceful: Callable[[], None],
        force: Callable[[], None],
        is_alive: Callable[[], bool],
    ) -> bool:
        """Ask for a graceful stop and arm the escalation timer.

        Returns:
            False if a stop was already requested
        """
        with self._lock:
            if self._requested.is_set() or self._disposed:
                return False
            self._requested.set()
            self._timer = threading.Timer(
                self.grace_seconds, self._escalate, args=(force, is_alive)
            )
            self._timer.daemon = True

        graceful()
        with self._lock:
            if not self._disposed:
                self._timer.start()
        return True

    def dispose(self) -> None:
        """Disarm the escalation timer once the run has ended."""
        with self._lock:
            self._disposed = True
            if self._timer is not None:
                self._timer.cancel()

    def _escalate(self, force: Callable[[], None], is_alive: Callable[[], bool]) -> None:
        with self._lock:
            if self._disposed:
                return
        if is_alive():
            self.escalated = True
            logger.warning(
                "Graceful stop timed out, forcing termination",
                grace_seconds=self.grace_seconds,
            )
            force()


class TaskRunner(ABC):
    """Base class for backend adapters."""

    agent_type: AgentType = AgentType.CLAUDE
    executable_name: str = ""
    env_var: Optional[str] = None
    use_stdin: bool = True

    def __init__(self, config: Optional[SystemConfiguration] = None):
        self.config = config or SystemConfiguration.create_default()
        self.settings = self.config.get_agent_settings(self.agent_type)
        self.grace_seconds = self.config.cancel_grace_seconds

        self._lock = threading.Lock()
        self._transport: Optional[CLITransport] = None
        self._stream: Optional[RunStream] = None
        self._token: Optional[CancellationToken] = None
        self._task_id: Optional[str] = None

        self.logger = get_logger(__name__)
        self.logger.add_context(runner=self.agent_type.value)

    # ------------------------------------------------------------------ #
    # Validation
    # ------------------------------------------------------------------ #
    def resolve_executable(self) -> Optional[str]:
        return resolve_cli_path(
            self.executable_name,
            env_var=self.env_var,
            configured_path=self.settings.get("executable_path"),
        )

    def preflight(self, task: QueuedTask) -> str:
        """Validate a task before anything is spawned.

        Returns:
            Path of the backend executable

        Raises:
            PreflightError: On the first failed check
        """
        if not task.prompt or not task.prompt.strip():
            raise PreflightError("Task prompt is empty", details={"task_id": task.id})

        if not task.repo_path or not os.path.isdir(task.repo_path):
            raise PreflightError(
                f"Working directory does not exist: {task.repo_path}",
                details={"task_id": task.id},
            )

        if not task.agent_type.supports_headless:
            raise PreflightError(
                f"Agent '{task.agent_type.value}' does not support headless execution",
                details={"task_id": task.id},
            )

        executable = self.resolve_executable()
        if not executable:
            hint = f" or set {self.env_var}" if self.env_var else ""
            raise PreflightError(
                f"{self.executable_name} CLI not found. Install it{hint}.",
                details={"task_id": task.id},
            )
        return executable

    def resolve_model(self, task: QueuedTask) -> str:
        """Task model first, then the backend default.

        Raises:
            ModelResolutionError: If neither is available
        """
        if task.model is not None:
            return task.model.cli_model_string
        default_model = self.settings.get("default_model")
        if default_model:
            return default_model
        raise ModelResolutionError(
            f"No model selected and no default model configured for "
            f"{self.agent_type.value}",
            details={"task_id": task.id},
        )

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def start(self, task: QueuedTask, model: Optional[str] = None) -> RunStream:
        """Spawn the backend CLI for ``task``.

        Raises:
            TaskRunError: If the process cannot be started
        """
        executable = self.resolve_executable()
        if not executable:
            raise TaskRunError(
                f"CLI not found: {self.executable_name}",
                failure_kind=FailureKind.PERMANENT.value,
            )
        model = model or self.resolve_model(task)

        stream = RunStream()
        token = CancellationToken(self.grace_seconds)
        transport = CLITransport(
            self.build_command(executable, task, model),
            cwd=task.repo_path,
            use_stdin=self.use_stdin,
        )
        with self._lock:
            self._stream = stream
            self._token = token
            self._transport = transport
            self._task_id = task.id
        self.reset()

        try:
            transport.start(on_line=self._on_line, on_exit=self._on_exit)
        except TransportError as e:
            token.dispose()
            raise TaskRunError(
                e.message, failure_kind=FailureKind.PERMANENT.value, details=e.details
            ) from e

        self.logger.info(
            "Runner started", task_id=task.id, model=model, pid=transport.pid
        )
        try:
            self.on_started(transport, task, model)
        except TransportError as e:
            self.logger.error("Failed to deliver prompt", task_id=task.id, error=e.message)
            transport.terminate()
        return stream

    def cancel(self, task_id: Optional[str] = None) -> bool:
        """Request a graceful stop of the current run.

        Returns:
            True if a stop was requested
        """
        with self._lock:
            if task_id is not None and task_id != self._task_id:
                return False
            token, transport = self._token, self._transport
        if token is None or transport is None:
            return False

        requested = token.request(
            graceful=transport.interrupt,
            force=transport.terminate,
            is_alive=lambda: transport.is_running,
        )
        if requested:
            self.logger.info(
                "Cancellation requested",
                task_id=self._task_id,
                grace_seconds=self.grace_seconds,
            )
        return requested

    @property
    def cancel_requested(self) -> bool:
        token = self._token
        return token is not None and token.requested

    def _emit(self, event: RunEvent) -> bool:
        stream = self._stream
        if stream is None or not stream.emit(event):
            return False
        if is_terminal(event) and self._token is not None:
            self._token.dispose()
        return True

    def _on_line(self, line: str) -> None:
        for event in self.handle_line(line):
            if self._emit(event) and is_terminal(event):
                transport = self._transport
                if transport is not None:
                    transport.close_stdin()
                    transport.terminate()

    def _on_exit(self, returncode: int, stderr_tail: str) -> None:
        event = self.handle_exit(returncode, stderr_tail)
        if self._emit(event):
            self.logger.info(
                "Run ended without a result",
                task_id=self._task_id,
                returncode=returncode,
                outcome=event.describe(),
            )
        if self._token is not None:
            self._token.dispose()

    # ------------------------------------------------------------------ #
    # Backend hooks
    # ------------------------------------------------------------------ #
    @abstractmethod
    def build_command(self, executable: str, task: QueuedTask, model: str) -> List[str]:
        """Full argv for the backend CLI."""

    @abstractmethod
    def handle_line(self, line: str) -> List[RunEvent]:
        """Translate one stdout line into zero or more events."""

    def reset(self) -> None:
        """Clear per-attempt parser state."""

    def on_started(self, transport: CLITransport, task: QueuedTask, model: str) -> None:
        """Called once the process is running."""

    def handle_exit(self, returncode: int, stderr_tail: str) -> RunEvent:
        """Event for a process that exited without a terminal event."""
        if self.cancel_requested:
            return RunCancelled("cancelled by request")
        if returncode == 0:
            return RunCancelled("process exited without a result")

        stderr = (stderr_tail or "").strip()
        if stderr:
            message = f"Process crashed: {stderr[:200]}"
        else:
            message = f"Process crashed (exit code {returncode})"
        return RunFailed(
            message,
            failure_kind=classify_process_crash().failure_kind,
            exit_code=returncode,
            stderr=stderr,
        )


def create_runner(task: QueuedTask, config: Optional[SystemConfiguration] = None) -> TaskRunner:
    """Runner for the task's backend.

    Terminal tasks get the Claude runner, whose preflight rejects them.
    """
    from .claude_task_runner import ClaudeTaskRunner
    from .opencode_task_runner import OpenCodeTaskRunner

    if task.agent_type == AgentType.OPENCODE:
        return OpenCodeTaskRunner(config)
    return ClaudeTaskRunner(config)
