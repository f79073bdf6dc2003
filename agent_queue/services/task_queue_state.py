"""TaskQueueState service, the single writer of the task list.

All changes to queued tasks go through this class: user intents (enqueue,
edit, retry, approve, ...) and the orchestrator's lifecycle transitions.
Mutations are serialized by one lock, readers receive copies, and every
change is persisted through the store and announced to listeners.
"""

import threading
from typing import Callable, Dict, List, Optional

from ..exceptions import (
    InvalidTransitionError,
    TaskNotEditableError,
    TaskNotFoundError,
)
from ..models.queue_snapshot import QueueSnapshot
from ..models.queued_task import (
    AgentType,
    ChatMode,
    FailureKind,
    ModelSelection,
    QueuedTask,
    TaskExitReason,
    TaskPriority,
    TaskStatus,
)
from ..models.system_configuration import SystemConfiguration
from ..utils.logging import get_logger
from .task_queue_store import TaskQueueStore

QueueListener = Callable[[], None]


class TaskQueueState:
    """In-memory task list with an intent-based mutation API."""

    def __init__(
        self,
        store: Optional[TaskQueueStore] = None,
        config: Optional[SystemConfiguration] = None,
    ):
        self.store = store
        self.config = config or SystemConfiguration.create_default()
        self._tasks: List[QueuedTask] = []
        self._lock = threading.RLock()
        self._listeners: List[QueueListener] = []
        self.logger = get_logger(__name__)
        self.logger.add_context(service="task_queue_state")

    # ------------------------------------------------------------------ #
    # Loading and observation
    # ------------------------------------------------------------------ #
    def restore(self, recover: bool = True) -> bool:
        """Replace the task list with the stored snapshot.

        Args:
            recover: Return tasks persisted as running to pending

        Returns:
            True if a snapshot was loaded
        """
        if self.store is None:
            return False
        snapshot = self.store.load(recover=recover)
        with self._lock:
            self._tasks = list(snapshot.tasks) if snapshot else []
        self._notify()
        return snapshot is not None

    @property
    def tasks(self) -> List[QueuedTask]:
        """Copy of the task list in queue order."""
        with self._lock:
            return [task.model_copy(deep=True) for task in self._tasks]

    def get_task(self, task_id: str) -> Optional[QueuedTask]:
        with self._lock:
            for task in self._tasks:
                if task.id == task_id:
                    return task.model_copy(deep=True)
        return None

    def find_task(self, id_or_prefix: str) -> QueuedTask:
        """Resolve a full id or a unique id prefix.

        Raises:
            TaskNotFoundError: If nothing or more than one task matches
        """
        with self._lock:
            exact = [t for t in self._tasks if t.id == id_or_prefix]
            matches = exact or [t for t in self._tasks if t.id.startswith(id_or_prefix)]
            if len(matches) != 1:
                reason = "ambiguous" if matches else "unknown"
                raise TaskNotFoundError(
                    f"No unique task matches '{id_or_prefix}' ({reason})",
                    details={"matches": len(matches)},
                )
            return matches[0].model_copy(deep=True)

    def running_task(self) -> Optional[QueuedTask]:
        with self._lock:
            for task in self._tasks:
                if task.status == TaskStatus.RUNNING:
                    return task.model_copy(deep=True)
        return None

    def counts(self) -> Dict[str, int]:
        with self._lock:
            result = {status.value: 0 for status in TaskStatus}
            for task in self._tasks:
                result[task.status.value] += 1
            return result

    def add_listener(self, listener: QueueListener) -> None:
        """Register a "queue changed" callback."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: QueueListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------ #
    # User intents
    # ------------------------------------------------------------------ #
    def enqueue(
        self,
        title: str,
        prompt: str,
        repo_path: str,
        agent_type: AgentType = AgentType.CLAUDE,
        model: Optional[ModelSelection] = None,
        mode: Optional[ChatMode] = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        max_retries: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
    ) -> QueuedTask:
        """Append a new pending task.

        Returns:
            A copy of the created task
        """
        retry_defaults = self.config.retry
        task = QueuedTask(
            title=title,
            prompt=prompt,
            repo_path=repo_path,
            agent_type=agent_type,
            model=model,
            mode=mode,
            priority=priority,
            max_retries=(
                retry_defaults["default_max_retries"]
                if max_retries is None
                else max_retries
            ),
            retry_backoff_seconds=(
                retry_defaults["backoff_base_seconds"]
                if retry_backoff_seconds is None
                else retry_backoff_seconds
            ),
        )
        with self._lock:
            self._tasks.append(task)
            created = task.model_copy(deep=True)
        self.logger.info(
            "Task enqueued",
            task_id=task.id,
            priority=task.priority.value,
            agent=task.agent_type.value,
        )
        self._commit()
        return created

    def remove(self, task_id: str) -> QueuedTask:
        """Delete a pending task."""
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.PENDING:
                raise TaskNotEditableError(
                    f"Only pending tasks can be removed, task is {task.status.value}",
                    details={"task_id": task_id},
                )
            self._tasks.remove(task)
        self.logger.info("Task removed", task_id=task_id)
        self._commit()
        return task

    def remove_finished(self) -> int:
        """Drop terminal tasks kept as history.

        Returns:
            Number of tasks removed
        """
        with self._lock:
            before = len(self._tasks)
            self._tasks = [t for t in self._tasks if not t.is_terminal]
            removed = before - len(self._tasks)
        if removed:
            self._commit()
        return removed

    def reorder(self, task_id: str, new_index: int) -> None:
        """Move a pending task to another position in the list."""
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.PENDING:
                raise TaskNotEditableError(
                    f"Only pending tasks can be reordered, task is {task.status.value}",
                    details={"task_id": task_id},
                )
            self._tasks.remove(task)
            new_index = max(0, min(new_index, len(self._tasks)))
            self._tasks.insert(new_index, task)
        self._commit()

    def edit(
        self,
        task_id: str,
        title: Optional[str] = None,
        prompt: Optional[str] = None,
        priority: Optional[TaskPriority] = None,
    ) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            task.apply_edit(title=title, prompt=prompt, priority=priority)
            updated = task.model_copy(deep=True)
        self._commit()
        return updated

    def retry(self, task_id: str) -> QueuedTask:
        """Manually send a failed task back to pending."""
        with self._lock:
            task = self._require(task_id)
            task.reset_for_retry()
            updated = task.model_copy(deep=True)
        self.logger.info(
            "Task queued for manual retry", task_id=task_id, retry_count=updated.retry_count
        )
        self._commit()
        return updated

    def cancel_task(self, task_id: str) -> QueuedTask:
        """Cancel a pending task. Running tasks are cancelled by the orchestrator."""
        with self._lock:
            task = self._require(task_id)
            if task.status != TaskStatus.PENDING:
                raise TaskNotEditableError(
                    f"Only pending tasks can be cancelled here, task is {task.status.value}",
                    details={"task_id": task_id},
                )
            task.mark_cancelled()
            updated = task.model_copy(deep=True)
        self.logger.info("Pending task cancelled", task_id=task_id)
        self._commit(immediate=True)
        return updated

    def approve(self, task_id: str) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            task.approve()
            updated = task.model_copy(deep=True)
        self.logger.info("Risky operations approved", task_id=task_id)
        self._commit(immediate=True)
        return updated

    def reject(self, task_id: str) -> QueuedTask:
        """Reject risky operations; the task fails immediately."""
        with self._lock:
            task = self._require(task_id)
            task.reject()
            updated = task.model_copy(deep=True)
        self.logger.warning("Risky operations rejected", task_id=task_id)
        self._commit(immediate=True)
        return updated

    # ------------------------------------------------------------------ #
    # Orchestrator transitions
    # ------------------------------------------------------------------ #
    def mark_running(
        self, task_id: str, attempt_id: str, resolved_model: Optional[str] = None
    ) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            for other in self._tasks:
                if other is not task and other.status == TaskStatus.RUNNING:
                    raise InvalidTransitionError(
                        "Another task is already running",
                        details={"task_id": task_id, "running": other.id},
                    )
            task.mark_running(attempt_id, resolved_model=resolved_model)
            updated = task.model_copy(deep=True)
        self._commit()
        return updated

    def mark_completed(
        self,
        task_id: str,
        result_summary: Optional[str] = None,
        log_artifact_path: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            task.mark_completed(
                result_summary=result_summary,
                log_artifact_path=log_artifact_path,
                session_id=session_id,
            )
            updated = task.model_copy(deep=True)
        self._commit(immediate=True)
        return updated

    def mark_failed(
        self,
        task_id: str,
        error: str,
        exit_reason: TaskExitReason = TaskExitReason.FAILED,
        failure_kind: FailureKind = FailureKind.PERMANENT,
        log_artifact_path: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            task.mark_failed(
                error,
                exit_reason=exit_reason,
                failure_kind=failure_kind,
                log_artifact_path=log_artifact_path,
            )
            if session_id:
                task.session_id = session_id
            updated = task.model_copy(deep=True)
        self._commit(immediate=True)
        return updated

    def mark_pending_for_retry(
        self,
        task_id: str,
        error: str,
        failure_kind: FailureKind = FailureKind.TRANSIENT,
        exit_reason: TaskExitReason = TaskExitReason.FAILED,
        retry_after=None,
        log_artifact_path: Optional[str] = None,
    ) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            task.mark_pending_for_retry(
                error,
                failure_kind=failure_kind,
                exit_reason=exit_reason,
                retry_after=retry_after,
                log_artifact_path=log_artifact_path,
            )
            updated = task.model_copy(deep=True)
        self._commit()
        return updated

    def mark_cancelled(
        self, task_id: str, log_artifact_path: Optional[str] = None
    ) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            task.mark_cancelled(log_artifact_path=log_artifact_path)
            updated = task.model_copy(deep=True)
        self._commit(immediate=True)
        return updated

    def mark_interrupted(self, task_id: str, note: str) -> QueuedTask:
        """Return a running task to pending without consuming a retry."""
        with self._lock:
            task = self._require(task_id)
            task.recover_interrupted(note)
            updated = task.model_copy(deep=True)
        self._commit(immediate=True)
        return updated

    def request_approval(self, task_id: str, reasons: List[str]) -> QueuedTask:
        with self._lock:
            task = self._require(task_id)
            task.request_approval(reasons)
            updated = task.model_copy(deep=True)
        self._commit()
        return updated

    def attach_log_artifact(self, task_id: str, log_artifact_path: str) -> None:
        with self._lock:
            self._require(task_id).log_artifact_path = log_artifact_path
        self._commit(immediate=True)

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(tasks=self.tasks)

    def save_immediately(self) -> bool:
        """Flush the current list synchronously (used at shutdown)."""
        if self.store is None:
            return False
        return self.store.save_immediately(self.snapshot())

    def _require(self, task_id: str) -> QueuedTask:
        for task in self._tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(
            f"Task not found: {task_id}", details={"task_id": task_id}
        )

    def _commit(self, immediate: bool = False) -> None:
        if self.store is not None:
            # Snapshot and hand-off under the lock keep writes in mutation order.
            with self._lock:
                snapshot = self.snapshot()
                if immediate:
                    self.store.save_immediately(snapshot)
                else:
                    self.store.save(snapshot)
        self._notify()

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception as e:  # pylint: disable=broad-except
                self.logger.error(
                    "Queue listener failed", listener=repr(listener), error=str(e)
                )
