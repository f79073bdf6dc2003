"""TaskQueueStore service for durable queue persistence.

Persists the whole queue as one schema-versioned JSON snapshot. Routine
saves are debounced through a coalescing timer; terminal transitions,
approval decisions and shutdown flush synchronously. Every write goes to a
temporary file in the same directory and is then atomically swapped in.
"""

import json
import os
import tempfile
import threading
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError

from ..models.queue_snapshot import QueueSnapshot
from ..models.queued_task import utc_now
from ..utils.logging import get_logger


class TaskQueueStore:
    """Service for loading and saving queue snapshots."""

    def __init__(self, queue_file: str, debounce_seconds: float = 1.0):
        """Initialize the store.

        Args:
            queue_file: Path of the snapshot file
            debounce_seconds: Quiet period before a routine save is written
        """
        self.queue_file = queue_file
        self.debounce_seconds = debounce_seconds
        self.recovered_task_ids: List[str] = []

        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[QueueSnapshot] = None

        self.logger = get_logger(__name__)
        self.logger.add_context(service="task_queue_store")

    @classmethod
    def from_config(cls, config) -> "TaskQueueStore":
        return cls(
            config.get_queue_file_path(),
            debounce_seconds=config.persistence["save_debounce_seconds"],
        )

    # ------------------------------------------------------------------ #
    # Loading
    # ------------------------------------------------------------------ #
    def load(self, recover: bool = True) -> Optional[QueueSnapshot]:
        """Load the last snapshot and recover interrupted tasks.

        Any task persisted as running is returned to pending with an
        interrupted note, and the recovered snapshot is written back.
        With ``recover=False`` the snapshot is returned as stored.

        Returns:
            The snapshot, or None when no usable file exists
        """
        self.recovered_task_ids = []
        if not os.path.exists(self.queue_file):
            self.logger.info("No queue snapshot found", path=self.queue_file)
            return None

        try:
            with open(self.queue_file, "r", encoding="utf-8") as f:
                payload = json.load(f)
            snapshot = QueueSnapshot.from_payload(payload)
        except (OSError, UnicodeDecodeError) as e:
            self.logger.error(
                "Queue snapshot unreadable, starting empty",
                path=self.queue_file,
                error=str(e),
            )
            return None
        except (json.JSONDecodeError, ValidationError, ValueError) as e:
            self.logger.error(
                "Queue snapshot corrupt, starting empty",
                path=self.queue_file,
                error=str(e),
            )
            self._quarantine_corrupt_file()
            return None

        recovered = snapshot.recover_running_tasks() if recover else []
        if recovered:
            self.recovered_task_ids = recovered
            self.logger.warning(
                "Recovered interrupted tasks", task_ids=recovered, count=len(recovered)
            )
            self.save_immediately(snapshot)

        self.logger.info("Loaded queue snapshot", tasks=len(snapshot.tasks))
        return snapshot

    def _quarantine_corrupt_file(self) -> None:
        backup_path = f"{self.queue_file}.corrupted.{int(datetime.now().timestamp())}"
        try:
            os.replace(self.queue_file, backup_path)
            self.logger.warning("Corrupt snapshot moved aside", backup=backup_path)
        except OSError as e:
            self.logger.error("Could not move corrupt snapshot", error=str(e))

    # ------------------------------------------------------------------ #
    # Saving
    # ------------------------------------------------------------------ #
    def save(self, snapshot: QueueSnapshot) -> None:
        """Schedule a debounced save; rapid calls coalesce into one write."""
        with self._lock:
            self._pending = snapshot
            if self._timer is not None:
                self._timer.cancel()
            if self.debounce_seconds <= 0:
                self._timer = None
                self._flush_pending()
                return
            self._timer = threading.Timer(self.debounce_seconds, self._flush_pending)
            self._timer.daemon = True
            self._timer.start()

    def save_immediately(self, snapshot: Optional[QueueSnapshot] = None) -> bool:
        """Cancel any pending debounce and write synchronously.

        Args:
            snapshot: Snapshot to write; defaults to the pending one

        Returns:
            True if a snapshot was written
        """
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            target = snapshot or self._pending
            self._pending = None
            if target is None:
                return False
            return self._write(target)

    @property
    def has_pending_save(self) -> bool:
        with self._lock:
            return self._pending is not None

    def _flush_pending(self) -> None:
        with self._lock:
            self._timer = None
            snapshot = self._pending
            self._pending = None
            if snapshot is not None:
                self._write(snapshot)

    def _write(self, snapshot: QueueSnapshot) -> bool:
        directory = os.path.dirname(os.path.abspath(self.queue_file))
        temp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            snapshot.saved_at = utc_now()
            fd, temp_path = tempfile.mkstemp(
                prefix=".queue-", suffix=".tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.queue_file)
            return True
        except OSError as e:
            self.logger.error(
                "Failed to save queue snapshot", path=self.queue_file, error=str(e)
            )
            if temp_path and os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
            return False
