"""TaskOrchestrator service, the scheduling loop of the task queue.

Runs at most one task at a time on a background thread. Each pass picks
the eligible pending task with the best priority (oldest first among
equals), validates it, starts its runner and consumes the run stream until
a terminal event. Risky tool calls suspend the loop until a human approves
or rejects; transient failures go back to pending with exponential backoff.
All task mutations go through TaskQueueState.
"""

import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..exceptions import (
    InvalidTransitionError,
    PreflightError,
    TaskNotFoundError,
    TaskRunError,
)
from ..models.queued_task import (
    ApprovalState,
    FailureKind,
    QueuedTask,
    TaskExitReason,
    TaskStatus,
    utc_now,
)
from ..models.run_event import (
    RunCancelled,
    RunCompleted,
    RunEvent,
    RunFailed,
    SessionStarted,
    ToolUse,
    is_terminal,
)
from ..models.system_configuration import SystemConfiguration
from ..utils.logging import get_logger
from .failure_classifier import classify_timeout, compute_backoff
from .risky_tool_detector import RiskyToolDetector
from .task_log_collector import TaskLogCollector
from .task_queue_state import TaskQueueState
from .task_runner import TaskRunner, create_runner

SHUTDOWN_NOTE = "Interrupted by shutdown; the task will run again."

# Extra wait after the cancel grace period for the runner to report back.
STOP_ACK_MARGIN_SECONDS = 5.0

RunnerFactory = Callable[[QueuedTask, SystemConfiguration], TaskRunner]


def select_next_task(
    tasks: Iterable[QueuedTask], now: Optional[datetime] = None
) -> Optional[QueuedTask]:
    """Eligible pending task with the smallest (priority, created_at).

    Among identical keys the earlier task in queue order wins.
    """
    now = now or utc_now()
    eligible = [task for task in tasks if task.is_eligible(now)]
    if not eligible:
        return None
    return min(eligible, key=lambda task: task.scheduling_key())


def format_timeout(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}-minute"
    return f"{seconds:g}-second"


class _StopReason:
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    SHUTDOWN = "shutdown"


class ActiveRun:
    """Bookkeeping for the attempt currently executing."""

    def __init__(
        self,
        task: QueuedTask,
        attempt_id: str,
        runner: TaskRunner,
        collector: TaskLogCollector,
    ):
        self.task_id = task.id
        self.attempt_id = attempt_id
        self.runner = runner
        self.collector = collector
        self.session_id: Optional[str] = task.session_id
        self.stop_reason: Optional[str] = None
        self.decision = threading.Event()
        self.awaiting_approval = False
        # Monotonic time at which the wall-clock budget from started_at runs out.
        self.deadline = float("inf")


class TaskOrchestrator:
    """Single-active-task scheduler driving runners through the queue."""

    def __init__(
        self,
        queue_state: TaskQueueState,
        config: Optional[SystemConfiguration] = None,
        runner_factory: RunnerFactory = create_runner,
        detector: Optional[RiskyToolDetector] = None,
    ):
        self.queue_state = queue_state
        self.config = config or queue_state.config
        self.runner_factory = runner_factory
        self.detector = detector or RiskyToolDetector()

        self.timeout_seconds = self.config.execution_timeout
        self.grace_seconds = self.config.cancel_grace_seconds
        self.poll_interval = float(self.config.execution["poll_interval"])
        self.idle_interval = float(self.config.execution["idle_interval"])

        self.running = False
        self._thread: Optional[threading.Thread] = None
        self._wakeup = threading.Event()
        self._shutdown_event = threading.Event()
        self._idle = threading.Event()
        self._lock = threading.RLock()
        self._active: Optional[ActiveRun] = None

        self.event_callbacks: Dict[str, List[Callable]] = {
            "task_started": [],
            "task_finished": [],
            "approval_required": [],
            "retry_scheduled": [],
        }

        self.logger = get_logger(__name__)
        self.logger.add_context(service="task_orchestrator")

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def start(self) -> None:
        """Start the scheduler thread."""
        with self._lock:
            if self.running:
                return
            self.running = True
            self._shutdown_event.clear()
            self._idle.clear()
            self.queue_state.add_listener(self.notify_queue_changed)
            self._thread = threading.Thread(
                target=self._scheduler_loop, name="task-orchestrator", daemon=True
            )
            self._thread.start()
        self.logger.info("Orchestrator started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop scheduling and interrupt the active run.

        The interrupted task goes back to pending so it runs again on the
        next start.
        """
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._shutdown_event.set()
            active = self._active
        if active is not None:
            self._request_stop(active, _StopReason.SHUTDOWN)
            active.decision.set()
        self._wakeup.set()

        join_timeout = timeout
        if join_timeout is None:
            join_timeout = self.grace_seconds + STOP_ACK_MARGIN_SECONDS + 5.0
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=join_timeout)
            if self._thread.is_alive():
                self.logger.warning("Scheduler thread did not stop in time")
        self.queue_state.remove_listener(self.notify_queue_changed)
        self.logger.info("Orchestrator stopped")

    def notify_queue_changed(self) -> None:
        """Queue State listener: re-run the scheduling pass."""
        self._idle.clear()
        active = self._active
        if active is not None and active.awaiting_approval:
            active.decision.set()
        self._wakeup.set()

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is running, eligible or backing off."""
        return self._idle.wait(timeout)

    @property
    def is_idle(self) -> bool:
        return self._idle.is_set()

    # ------------------------------------------------------------------ #
    # User actions
    # ------------------------------------------------------------------ #
    def cancel_task(self, task_id: str) -> QueuedTask:
        """Cancel a pending or running task.

        Pending tasks are cancelled at once. A running task is stopped
        gracefully, then forcibly after the grace period; it ends as
        cancelled either way.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidTransitionError: If the task cannot be cancelled
        """
        task = self.queue_state.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}", details={"task_id": task_id})

        if task.status == TaskStatus.PENDING:
            return self.queue_state.cancel_task(task_id)

        if task.status == TaskStatus.RUNNING:
            active = self._active
            if active is None or active.task_id != task_id:
                raise InvalidTransitionError(
                    "Task is not running in this orchestrator",
                    details={"task_id": task_id},
                )
            self._request_stop(active, _StopReason.CANCELLED)
            active.decision.set()
            return task

        raise InvalidTransitionError(
            f"Cannot cancel a {task.status.value} task", details={"task_id": task_id}
        )

    def cancel_running_task(self) -> Optional[str]:
        """Cancel whatever is running. Returns its id, if any."""
        active = self._active
        if active is None:
            return None
        self.cancel_task(active.task_id)
        return active.task_id

    @property
    def active_task_id(self) -> Optional[str]:
        active = self._active
        return active.task_id if active else None

    def live_log(self) -> List[str]:
        """Recent log lines of the active run."""
        active = self._active
        return active.collector.recent_lines() if active else []

    # ------------------------------------------------------------------ #
    # Event callbacks
    # ------------------------------------------------------------------ #
    def add_event_callback(self, event_type: str, callback: Callable) -> None:
        """Add event callback."""
        if event_type in self.event_callbacks:
            self.event_callbacks[event_type].append(callback)

    def remove_event_callback(self, event_type: str, callback: Callable) -> bool:
        """Remove event callback."""
        if event_type in self.event_callbacks:
            try:
                self.event_callbacks[event_type].remove(callback)
                return True
            except ValueError:
                pass
        return False

    def _trigger_event(self, event_type: str, data: Dict[str, Any]) -> None:
        for callback in self.event_callbacks.get(event_type, []):
            try:
                callback(data)
            except Exception as e:  # pylint: disable=broad-except
                self.logger.error(
                    "Event callback failed", event_type=event_type, error=str(e)
                )

    # ------------------------------------------------------------------ #
    # Scheduling loop
    # ------------------------------------------------------------------ #
    def _scheduler_loop(self) -> None:
        while not self._shutdown_event.is_set():
            self._wakeup.clear()
            try:
                if self.run_next():
                    continue
            except Exception as e:  # pylint: disable=broad-except
                self.logger.exception("Scheduling pass failed", error=str(e))
                self._shutdown_event.wait(1.0)
                continue

            delay = self._next_wakeup_delay()
            if delay is None:
                if not self._wakeup.is_set():
                    self._idle.set()
                delay = self.idle_interval
            self._wakeup.wait(delay)

    def _next_wakeup_delay(self) -> Optional[float]:
        """Seconds until the earliest backoff expires; None if nothing waits."""
        now = utc_now()
        delays = [
            (task.retry_after - now).total_seconds()
            for task in self.queue_state.tasks
            if task.status == TaskStatus.PENDING and task.retry_after is not None
        ]
        if not delays:
            return None
        return max(0.05, min(min(delays), self.idle_interval))

    def run_next(self) -> bool:
        """Run one scheduling pass.

        Returns:
            True if a task was picked up
        """
        running = self.queue_state.running_task()
        if running is not None:
            self.logger.warning(
                "A task is marked running outside this orchestrator", task_id=running.id
            )
            return False

        task = select_next_task(self.queue_state.tasks)
        if task is None:
            return False
        self._execute(task)
        return True

    def _execute(self, task: QueuedTask) -> None:
        attempt_id = uuid.uuid4().hex[:12]
        runner = self.runner_factory(task, self.config)

        try:
            runner.preflight(task)
            model = runner.resolve_model(task)
        except PreflightError as e:
            self.logger.warning("Preflight failed", task_id=task.id, error=e.message)
            self.queue_state.mark_running(task.id, attempt_id)
            failed = self.queue_state.mark_failed(
                task.id,
                e.message,
                exit_reason=TaskExitReason.FAILED,
                failure_kind=FailureKind.PERMANENT,
            )
            self._trigger_event("task_finished", self._task_data(failed))
            return

        collector = TaskLogCollector(
            task.id,
            attempt_id,
            self.config.get_task_logs_directory(),
            max_bytes=int(self.config.logs["artifact_max_bytes"]),
            live_window=int(self.config.logs["live_window_lines"]),
        )
        running = self.queue_state.mark_running(task.id, attempt_id, resolved_model=model)
        active = ActiveRun(running, attempt_id, runner, collector)
        elapsed = (utc_now() - running.started_at).total_seconds()
        active.deadline = time.monotonic() + self.timeout_seconds - max(0.0, elapsed)
        with self._lock:
            self._active = active

        self.logger.info(
            "Task started",
            task_id=task.id,
            attempt_id=attempt_id,
            agent=task.agent_type.value,
            model=model,
        )
        self._trigger_event("task_started", self._task_data(running))
        collector.append(f"Starting {task.agent_type.value} task {task.id} attempt {attempt_id}")
        collector.append(f"Working directory: {task.repo_path}")
        collector.append(f"Model: {model}")

        terminal: Optional[RunEvent] = None
        start_error: Optional[str] = None
        try:
            if self._shutdown_event.is_set():
                active.stop_reason = _StopReason.SHUTDOWN
            else:
                stream = runner.start(running, model)
                terminal = self._consume(active, stream)
        except (TaskRunError, PreflightError) as e:
            start_error = e.message
            collector.append(f"Failed to start: {e.message}")
        finally:
            with self._lock:
                self._active = None

        finished = self._finish(active, terminal, start_error)
        if finished is not None:
            self._trigger_event("task_finished", self._task_data(finished))

    def _consume(self, active: ActiveRun, stream) -> Optional[RunEvent]:
        """Read the stream until a terminal event or an unacknowledged stop."""
        stop_deadline: Optional[float] = None

        while True:
            now = time.monotonic()
            if active.stop_reason is None and now >= active.deadline:
                active.collector.append(
                    f"TIMEOUT: Task exceeded {format_timeout(self.timeout_seconds)} limit"
                )
                self.logger.warning("Task timed out", task_id=active.task_id)
                self._request_stop(active, _StopReason.TIMEOUT)

            if active.stop_reason is not None:
                if stop_deadline is None:
                    stop_deadline = now + self.grace_seconds + STOP_ACK_MARGIN_SECONDS
                if now >= stop_deadline:
                    active.collector.append("Runner did not acknowledge the stop request")
                    return None
                remaining = stop_deadline - now
            else:
                remaining = active.deadline - now

            event = stream.next_event(timeout=min(self.poll_interval, remaining))
            if event is None:
                continue

            active.collector.append(event.describe())
            if isinstance(event, SessionStarted):
                active.session_id = event.session_id
            elif isinstance(event, ToolUse) and active.stop_reason is None:
                self._check_risky(active, event)

            if is_terminal(event):
                return event

    def _check_risky(self, active: ActiveRun, event: ToolUse) -> None:
        """Run the approval gate for one tool call.

        The wait counts toward the task timeout. A decision that arrives
        after the deadline leaves the task to time out.
        """
        detections = self.detector.check(event.tool_name, event.tool_input)
        if not detections:
            return

        reasons = [detection.reason for detection in detections]
        for reason in reasons:
            active.collector.append(f"RISKY: {reason}")

        active.decision.clear()
        active.awaiting_approval = True
        waiting = self.queue_state.request_approval(active.task_id, reasons)
        self._trigger_event("approval_required", self._task_data(waiting))
        self.logger.warning(
            "Waiting for approval", task_id=active.task_id, reasons=reasons
        )

        try:
            while active.stop_reason is None and not self._shutdown_event.is_set():
                current = self.queue_state.get_task(active.task_id)
                if current is None or not current.is_awaiting_approval:
                    break
                remaining = active.deadline - time.monotonic()
                if remaining <= 0:
                    self.logger.warning(
                        "Time limit reached while waiting for approval",
                        task_id=active.task_id,
                    )
                    break
                active.decision.wait(min(self.poll_interval, remaining))
                active.decision.clear()
        finally:
            active.awaiting_approval = False

        current = self.queue_state.get_task(active.task_id)
        if current is not None and current.approval_state == ApprovalState.REJECTED:
            active.collector.append("Approval rejected, stopping runner")
            self._request_stop(active, _StopReason.REJECTED)
        elif current is not None and current.approval_state == ApprovalState.APPROVED:
            if time.monotonic() >= active.deadline:
                active.collector.append("Approval granted after the time limit")
            else:
                active.collector.append("Approval granted, resuming")

    def _request_stop(self, active: ActiveRun, reason: str) -> None:
        with self._lock:
            if active.stop_reason is None:
                active.stop_reason = reason
        active.runner.cancel(active.task_id)

    # ------------------------------------------------------------------ #
    # Outcomes
    # ------------------------------------------------------------------ #
    def _finish(
        self,
        active: ActiveRun,
        terminal: Optional[RunEvent],
        start_error: Optional[str],
    ) -> Optional[QueuedTask]:
        log_path = active.collector.flush()
        task_id = active.task_id
        current = self.queue_state.get_task(task_id)
        if current is None:
            self.logger.error("Active task disappeared from the queue", task_id=task_id)
            return None

        if current.status != TaskStatus.RUNNING:
            # Already settled, e.g. by an approval rejection.
            if log_path:
                self.queue_state.attach_log_artifact(task_id, log_path)
            return self.queue_state.get_task(task_id)

        reason = active.stop_reason
        if reason == _StopReason.SHUTDOWN:
            self.logger.info("Task interrupted by shutdown", task_id=task_id)
            self.queue_state.mark_interrupted(task_id, SHUTDOWN_NOTE)
            if log_path:
                self.queue_state.attach_log_artifact(task_id, log_path)
            return self.queue_state.get_task(task_id)

        if reason == _StopReason.CANCELLED:
            self.logger.info("Task cancelled", task_id=task_id)
            return self.queue_state.mark_cancelled(task_id, log_artifact_path=log_path)

        if reason == _StopReason.TIMEOUT:
            return self._handle_failure(
                current,
                f"Task exceeded {format_timeout(self.timeout_seconds)} limit",
                classify_timeout().failure_kind,
                TaskExitReason.TIMEOUT,
                log_path,
            )

        if start_error is not None:
            return self.queue_state.mark_failed(
                task_id,
                start_error,
                exit_reason=TaskExitReason.FAILED,
                failure_kind=FailureKind.PERMANENT,
                log_artifact_path=log_path,
            )

        if isinstance(terminal, RunCompleted):
            self.logger.info("Task completed", task_id=task_id)
            return self.queue_state.mark_completed(
                task_id,
                result_summary=terminal.summary,
                log_artifact_path=log_path,
                session_id=terminal.session_id or active.session_id,
            )

        if isinstance(terminal, RunFailed):
            return self._handle_failure(
                current,
                terminal.message,
                terminal.failure_kind,
                TaskExitReason.FAILED,
                log_path,
                session_id=active.session_id,
            )

        if isinstance(terminal, RunCancelled):
            return self.queue_state.mark_failed(
                task_id,
                f"Agent process ended without a result ({terminal.reason})",
                exit_reason=TaskExitReason.CANCELLED,
                failure_kind=FailureKind.PERMANENT,
                log_artifact_path=log_path,
                session_id=active.session_id,
            )

        return self._handle_failure(
            current,
            "Run ended without a terminal event",
            FailureKind.TRANSIENT,
            TaskExitReason.FAILED,
            log_path,
        )

    def _handle_failure(
        self,
        task: QueuedTask,
        error: str,
        failure_kind: FailureKind,
        exit_reason: TaskExitReason,
        log_path: Optional[str],
        session_id: Optional[str] = None,
    ) -> QueuedTask:
        """Auto-retry transient failures within budget; fail everything else."""
        if failure_kind == FailureKind.TRANSIENT and task.retry_count < task.max_retries:
            delay = compute_backoff(
                task.retry_backoff_seconds,
                task.retry_count,
                float(self.config.retry["backoff_max_seconds"]),
            )
            updated = self.queue_state.mark_pending_for_retry(
                task.id,
                error,
                failure_kind=failure_kind,
                exit_reason=exit_reason,
                retry_after=utc_now() + timedelta(seconds=delay),
                log_artifact_path=log_path,
            )
            self.logger.warning(
                "Transient failure, retry scheduled",
                task_id=task.id,
                retry_count=updated.retry_count,
                max_retries=updated.max_retries,
                delay_seconds=delay,
                error=error,
            )
            data = self._task_data(updated)
            data["delay_seconds"] = delay
            self._trigger_event("retry_scheduled", data)
            return updated

        self.logger.warning(
            "Task failed",
            task_id=task.id,
            failure_kind=failure_kind.value,
            exit_reason=exit_reason.value,
            error=error,
        )
        return self.queue_state.mark_failed(
            task.id,
            error,
            exit_reason=exit_reason,
            failure_kind=failure_kind,
            log_artifact_path=log_path,
            session_id=session_id,
        )

    @staticmethod
    def _task_data(task: QueuedTask) -> Dict[str, Any]:
        return {
            "task_id": task.id,
            "title": task.title,
            "status": task.status.value,
            "exit_reason": task.exit_reason.value if task.exit_reason else None,
            "retry_count": task.retry_count,
            "risky_operations": list(task.risky_operations),
            "last_error": task.last_error,
        }
