"""QueueSnapshot model, the unit of queue persistence."""

from datetime import datetime
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .queued_task import QueuedTask, TaskStatus, utc_now

CURRENT_SCHEMA_VERSION = 1
OLDEST_SCHEMA_VERSION = 1


# Upgrades a payload of version N to N + 1 are registered under N.
_MIGRATIONS = {}


class QueueSnapshot(BaseModel):
    """Schema-versioned container of the full task list."""

    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION)
    tasks: List[QueuedTask] = Field(default_factory=list)
    saved_at: datetime = Field(default_factory=utc_now)

    def recover_running_tasks(self) -> List[str]:
        """Normalize in-doubt running tasks back to pending.

        Returns:
            Ids of the tasks that were recovered
        """
        recovered = []
        for task in self.tasks:
            if task.status == TaskStatus.RUNNING:
                task.recover_interrupted()
                recovered.append(task.id)
        return recovered

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: Any) -> "QueueSnapshot":
        """Build a snapshot from decoded JSON of any supported version.

        A bare list is read as a task array. A missing or unrecognized
        schema version is read as the oldest supported format.

        Raises:
            pydantic.ValidationError: If the payload does not describe tasks
            ValueError: If the payload is not a list or object
        """
        if isinstance(payload, list):
            payload = {"tasks": payload}
        if not isinstance(payload, dict):
            raise ValueError(f"Unsupported snapshot payload: {type(payload).__name__}")

        version = payload.get("schema_version")
        if not isinstance(version, int) or not (
            OLDEST_SCHEMA_VERSION <= version <= CURRENT_SCHEMA_VERSION
        ):
            version = OLDEST_SCHEMA_VERSION

        data = dict(payload)
        while version < CURRENT_SCHEMA_VERSION:
            data = _MIGRATIONS[version](data)
            version += 1
        data["schema_version"] = CURRENT_SCHEMA_VERSION
        data.setdefault("tasks", [])
        return cls.model_validate(data)
