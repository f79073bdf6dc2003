"""QueueInbox service: queue changes handed to the running queue.

While ``agent-queue run`` owns the snapshot, other processes must not write
it. They drop one JSON file per change into the inbox directory instead,
and the run process applies them through TaskQueueState in arrival order.
"""

import json
import os
import tempfile
import time
import uuid
from typing import Any, Dict, List, Optional

from ..exceptions import QueueException
from ..models.queued_task import AgentType, ChatMode, ModelSelection, TaskPriority
from ..utils.logging import get_logger

ACTIONS = ("add", "edit", "remove", "reorder", "retry", "cancel", "prune")


class QueueInbox:
    """Directory of pending queue changes."""

    def __init__(self, directory: str):
        self.directory = directory
        self.logger = get_logger(__name__)
        self.logger.add_context(service="queue_inbox")

    @classmethod
    def from_config(cls, config) -> "QueueInbox":
        return cls(config.get_inbox_directory())

    # ------------------------------------------------------------------ #
    # Producer side
    # ------------------------------------------------------------------ #
    def submit(self, action: str, **params: Any) -> str:
        """Write one change for the running queue.

        Returns:
            Path of the inbox entry
        """
        if action not in ACTIONS:
            raise ValueError(f"Unknown queue action: {action}")

        os.makedirs(self.directory, exist_ok=True)
        # Names sort in submission order.
        name = f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}.json"
        path = os.path.join(self.directory, name)
        payload = {"action": action, "params": params}

        fd, temp_path = tempfile.mkstemp(prefix=".intent-", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
        return path

    # ------------------------------------------------------------------ #
    # Consumer side
    # ------------------------------------------------------------------ #
    def pending_count(self) -> int:
        return len(self._entries())

    def drain(self) -> List[Dict[str, Any]]:
        """Read and delete every entry, oldest first.

        Unreadable entries are logged and dropped.
        """
        intents = []
        for path in self._entries():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    payload = json.load(f)
                if not isinstance(payload, dict) or "action" not in payload:
                    raise ValueError("missing action")
                intents.append(payload)
            except (OSError, ValueError) as e:
                self.logger.warning("Dropping unreadable inbox entry", path=path, error=str(e))
            finally:
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass
        return intents

    def process(self, queue_state, orchestrator=None) -> int:
        """Apply every pending change.

        A change that fails is logged and skipped; the rest still apply.

        Returns:
            Number of changes applied
        """
        applied = 0
        for intent in self.drain():
            try:
                apply_intent(intent, queue_state, orchestrator)
                applied += 1
            except (QueueException, ValueError, TypeError, KeyError) as e:
                self.logger.error(
                    "Queue change from another process failed",
                    action=intent.get("action"),
                    error=str(e),
                )
        return applied

    def _entries(self) -> List[str]:
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return []
        return [
            os.path.join(self.directory, name)
            for name in sorted(names)
            if name.endswith(".json")
        ]


def apply_intent(intent: Dict[str, Any], queue_state, orchestrator=None) -> Optional[Any]:
    """Apply one inbox change through the queue's own mutation API.

    Cancels go through the orchestrator when one is given, so running tasks
    are stopped the same way as from inside the run process.
    """
    action = intent["action"]
    params = dict(intent.get("params") or {})

    if action == "add":
        model = params.pop("model", None)
        mode = params.pop("mode", None)
        return queue_state.enqueue(
            title=params["title"],
            prompt=params["prompt"],
            repo_path=params["repo_path"],
            agent_type=AgentType(params.get("agent_type", AgentType.CLAUDE.value)),
            model=ModelSelection.parse(model) if model else None,
            mode=ChatMode(mode) if mode else None,
            priority=TaskPriority(params.get("priority", TaskPriority.NORMAL.value)),
            max_retries=params.get("max_retries"),
            retry_backoff_seconds=params.get("retry_backoff_seconds"),
        )
    if action == "edit":
        priority = params.get("priority")
        return queue_state.edit(
            params["task_id"],
            title=params.get("title"),
            prompt=params.get("prompt"),
            priority=TaskPriority(priority) if priority else None,
        )
    if action == "remove":
        return queue_state.remove(params["task_id"])
    if action == "reorder":
        return queue_state.reorder(params["task_id"], int(params["index"]))
    if action == "retry":
        return queue_state.retry(params["task_id"])
    if action == "cancel":
        if orchestrator is not None:
            return orchestrator.cancel_task(params["task_id"])
        return queue_state.cancel_task(params["task_id"])
    if action == "prune":
        return queue_state.remove_finished()
    raise ValueError(f"Unknown queue action: {action}")
