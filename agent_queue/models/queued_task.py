"""QueuedTask model for headless agent execution.

A queued task is one agent invocation: a prompt run by an agent backend
inside a working directory. The model owns the task state machine; every
allowed transition is a method and anything else raises
InvalidTransitionError.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..exceptions import InvalidTransitionError, TaskNotEditableError

RESULT_SUMMARY_LIMIT = 2000

INTERRUPTED_NOTE = (
    "Recovered after restart; task was running when the process exited."
)


def utc_now() -> datetime:
    """Timezone-aware current time used for all task timestamps."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Lifecycle states of a queued task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    """Scheduling priority. Lower sort order runs first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def sort_order(self) -> int:
        return _PRIORITY_ORDER[self]


_PRIORITY_ORDER = {
    TaskPriority.HIGH: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.LOW: 2,
}


class TaskExitReason(str, Enum):
    """Why a run ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    APPROVAL_REJECTED = "approval_rejected"


class ApprovalState(str, Enum):
    """Human approval sub-state, orthogonal to status."""

    NONE = "none"
    WAITING = "waiting"
    APPROVED = "approved"
    REJECTED = "rejected"


class FailureKind(str, Enum):
    """Retry classification of a failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class AgentType(str, Enum):
    """Agent backends a task can target."""

    CLAUDE = "claude"
    OPENCODE = "opencode"
    TERMINAL = "terminal"

    @property
    def supports_headless(self) -> bool:
        """Plain terminal sessions have no non-interactive mode."""
        return self is not AgentType.TERMINAL


class ChatMode(str, Enum):
    """Agent working mode."""

    BUILD = "build"
    PLAN = "plan"


ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.PENDING,
    },
    TaskStatus.FAILED: {TaskStatus.PENDING},
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}


class ModelSelection(BaseModel):
    """Model chosen for a task, optionally scoped to a provider."""

    model_id: str = Field(..., min_length=1)
    provider_id: Optional[str] = Field(default=None)
    display_name: Optional[str] = Field(default=None)

    model_config = ConfigDict(protected_namespaces=())

    @property
    def cli_model_string(self) -> str:
        """Model argument as the agent CLIs expect it."""
        if self.provider_id:
            return f"{self.provider_id}/{self.model_id}"
        return self.model_id

    @classmethod
    def parse(cls, value: str) -> "ModelSelection":
        """Build a selection from ``provider/model`` or a bare model id."""
        value = value.strip()
        if "/" in value:
            provider, model = value.split("/", 1)
            return cls(provider_id=provider or None, model_id=model)
        return cls(model_id=value)


class QueuedTask(BaseModel):
    """Serializable model representing one queued agent task."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str = Field(..., min_length=1)
    prompt: str = Field(default="")
    repo_path: str = Field(..., min_length=1)
    agent_type: AgentType = Field(default=AgentType.CLAUDE)
    model: Optional[ModelSelection] = Field(default=None)
    mode: Optional[ChatMode] = Field(default=None)

    status: TaskStatus = Field(default=TaskStatus.PENDING)
    priority: TaskPriority = Field(default=TaskPriority.NORMAL)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=2.0, ge=0)
    retry_after: Optional[datetime] = Field(default=None)
    run_attempt_id: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = Field(default=None)
    finished_at: Optional[datetime] = Field(default=None)

    last_error: Optional[str] = Field(default=None)
    result_summary: Optional[str] = Field(default=None)
    exit_reason: Optional[TaskExitReason] = Field(default=None)
    session_id: Optional[str] = Field(default=None)
    approval_state: ApprovalState = Field(default=ApprovalState.NONE)
    risky_operations: List[str] = Field(default_factory=list)
    log_artifact_path: Optional[str] = Field(default=None)
    failure_kind: Optional[FailureKind] = Field(default=None)
    interrupted_note: Optional[str] = Field(default=None)
    resolved_model: Optional[str] = Field(default=None)

    model_config = ConfigDict(validate_assignment=True, protected_namespaces=())

    @field_validator("title")
    def validate_title(cls, v):
        """Titles are trimmed and must not be blank."""
        if not v or not v.strip():
            raise ValueError("Task title cannot be empty")
        return v.strip()

    # ------------------------------------------------------------------ #
    # Derived state
    # ------------------------------------------------------------------ #
    @property
    def is_terminal(self) -> bool:
        return self.status in (
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        )

    @property
    def is_retryable(self) -> bool:
        return self.status == TaskStatus.FAILED and self.retry_count < self.max_retries

    @property
    def can_edit(self) -> bool:
        return self.status == TaskStatus.PENDING

    @property
    def is_awaiting_approval(self) -> bool:
        return (
            self.status == TaskStatus.RUNNING
            and self.approval_state == ApprovalState.WAITING
        )

    def is_eligible(self, now: Optional[datetime] = None) -> bool:
        """Pending and past any auto-retry backoff."""
        if self.status != TaskStatus.PENDING:
            return False
        if self.retry_after is None:
            return True
        return self.retry_after <= (now or utc_now())

    def scheduling_key(self):
        return (self.priority.sort_order, self.created_at)

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #
    def _transition(self, target: TaskStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move task from {self.status.value} to {target.value}",
                details={"task_id": self.id},
            )
        self.status = target

    def mark_running(
        self, attempt_id: str, resolved_model: Optional[str] = None
    ) -> None:
        """Start a fresh attempt."""
        self._transition(TaskStatus.RUNNING)
        self.run_attempt_id = attempt_id
        self.started_at = utc_now()
        self.finished_at = None
        self.exit_reason = None
        self.retry_after = None
        self.approval_state = ApprovalState.NONE
        self.risky_operations = []
        self.resolved_model = resolved_model

    def mark_completed(
        self,
        result_summary: Optional[str] = None,
        log_artifact_path: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self._transition(TaskStatus.COMPLETED)
        self.finished_at = utc_now()
        self.exit_reason = TaskExitReason.COMPLETED
        self.result_summary = (
            result_summary[:RESULT_SUMMARY_LIMIT] if result_summary else result_summary
        )
        self.last_error = None
        self.failure_kind = None
        if log_artifact_path:
            self.log_artifact_path = log_artifact_path
        if session_id:
            self.session_id = session_id

    def mark_failed(
        self,
        error: str,
        exit_reason: TaskExitReason = TaskExitReason.FAILED,
        failure_kind: FailureKind = FailureKind.PERMANENT,
        log_artifact_path: Optional[str] = None,
    ) -> None:
        self._transition(TaskStatus.FAILED)
        self.finished_at = utc_now()
        self.last_error = error
        self.exit_reason = exit_reason
        self.failure_kind = failure_kind
        if self.approval_state == ApprovalState.WAITING:
            self.approval_state = ApprovalState.NONE
        if log_artifact_path:
            self.log_artifact_path = log_artifact_path

    def mark_pending_for_retry(
        self,
        error: str,
        failure_kind: FailureKind,
        exit_reason: TaskExitReason = TaskExitReason.FAILED,
        retry_after: Optional[datetime] = None,
        log_artifact_path: Optional[str] = None,
    ) -> None:
        """Auto-retry path: running back to pending, consuming one retry."""
        if self.status != TaskStatus.RUNNING:
            raise InvalidTransitionError(
                f"Auto-retry requires a running task, not {self.status.value}",
                details={"task_id": self.id},
            )
        if self.retry_count >= self.max_retries:
            raise InvalidTransitionError(
                "Retry budget exhausted",
                details={"task_id": self.id, "max_retries": self.max_retries},
            )
        self._transition(TaskStatus.PENDING)
        self.retry_count += 1
        self.last_error = error
        self.failure_kind = failure_kind
        self.exit_reason = exit_reason
        self.retry_after = retry_after
        self.run_attempt_id = None
        self.started_at = None
        self.finished_at = None
        self.approval_state = ApprovalState.NONE
        if log_artifact_path:
            self.log_artifact_path = log_artifact_path

    def mark_cancelled(self, log_artifact_path: Optional[str] = None) -> None:
        self._transition(TaskStatus.CANCELLED)
        self.finished_at = utc_now()
        self.exit_reason = TaskExitReason.CANCELLED
        if self.approval_state == ApprovalState.WAITING:
            self.approval_state = ApprovalState.NONE
        if log_artifact_path:
            self.log_artifact_path = log_artifact_path

    def reset_for_retry(self) -> None:
        """Manual retry of a failed task."""
        if self.status != TaskStatus.FAILED:
            raise InvalidTransitionError(
                f"Only failed tasks can be retried, task is {self.status.value}",
                details={"task_id": self.id},
            )
        self._transition(TaskStatus.PENDING)
        self.retry_count += 1
        self.started_at = None
        self.finished_at = None
        self.last_error = None
        self.exit_reason = None
        self.failure_kind = None
        self.run_attempt_id = None
        self.retry_after = None
        self.interrupted_note = None
        self.approval_state = ApprovalState.NONE
        self.risky_operations = []

    def recover_interrupted(self, note: str = INTERRUPTED_NOTE) -> None:
        """Return an in-doubt running task to the schedulable pool."""
        self._transition(TaskStatus.PENDING)
        self.interrupted_note = note
        self.run_attempt_id = None
        self.started_at = None
        self.finished_at = None
        self.approval_state = ApprovalState.NONE

    # ------------------------------------------------------------------ #
    # Approval sub-state
    # ------------------------------------------------------------------ #
    def request_approval(self, reasons: List[str]) -> None:
        if self.status != TaskStatus.RUNNING:
            raise InvalidTransitionError(
                "Approval can only be requested for a running task",
                details={"task_id": self.id, "status": self.status.value},
            )
        self.approval_state = ApprovalState.WAITING
        for reason in reasons:
            if reason not in self.risky_operations:
                self.risky_operations.append(reason)

    def approve(self) -> None:
        self._require_waiting()
        self.approval_state = ApprovalState.APPROVED

    def reject(self) -> None:
        self._require_waiting()
        self.approval_state = ApprovalState.REJECTED
        operations = "; ".join(self.risky_operations) or "risky operation"
        self.mark_failed(
            f"Rejected by user: {operations}",
            exit_reason=TaskExitReason.APPROVAL_REJECTED,
            failure_kind=FailureKind.PERMANENT,
        )

    def _require_waiting(self) -> None:
        if not self.is_awaiting_approval:
            raise InvalidTransitionError(
                "Task is not waiting for approval",
                details={
                    "task_id": self.id,
                    "status": self.status.value,
                    "approval_state": self.approval_state.value,
                },
            )

    # ------------------------------------------------------------------ #
    # Editing
    # ------------------------------------------------------------------ #
    def apply_edit(
        self,
        title: Optional[str] = None,
        prompt: Optional[str] = None,
        priority: Optional[TaskPriority] = None,
    ) -> None:
        if not self.can_edit:
            raise TaskNotEditableError(
                f"Task can only be edited while pending, task is {self.status.value}",
                details={"task_id": self.id},
            )
        if title is not None:
            self.title = title
        if prompt is not None:
            self.prompt = prompt
        if priority is not None:
            self.priority = TaskPriority(priority)

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #
    def to_dict(self) -> Dict[str, Any]:
        """Return JSON-serializable representation."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedTask":
        """Create QueuedTask from dictionary."""
        return cls.model_validate(data)

    def __str__(self) -> str:
        return (
            f"QueuedTask(id={self.id[:8]}, status={self.status.value}, "
            f"priority={self.priority.value}, title={self.title!r})"
        )
