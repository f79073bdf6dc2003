"""Lock file marking the process that runs the queue.

Only the ``run`` process writes the queue snapshot while it is active.
Other commands check the lock and hand their changes over through the
queue inbox instead of writing the file themselves.
"""

import os
from datetime import datetime
from typing import Optional

import psutil

from ..exceptions import QueueLockedError
from ..utils.logging import get_logger


class RunLock:
    """Exclusive lock file holding the owner's pid."""

    def __init__(self, path: str):
        self.path = path
        self._held = False
        self.logger = get_logger(__name__)

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lock, clearing it first if its owner is gone.

        Raises:
            QueueLockedError: If a live process holds the lock
        """
        if self._held:
            return
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                owner = self.owner_pid()
                if owner is not None:
                    raise QueueLockedError(
                        f"The queue is already running (pid {owner})",
                        details={"pid": owner, "lock_file": self.path},
                    )
                self._remove_stale()
                continue

            lock_info = f"pid={os.getpid()}\nstarted_at={datetime.now().isoformat()}\n"
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(lock_info)
            self._held = True
            return

        raise QueueLockedError(
            "Could not take the run lock", details={"lock_file": self.path}
        )

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def owner_pid(self) -> Optional[int]:
        """Pid of the live process holding the lock, or None."""
        pid = self._read_pid()
        if pid is None or not psutil.pid_exists(pid):
            return None
        return pid

    def _read_pid(self) -> Optional[int]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError:
            return None
        for line in content.splitlines():
            if line.startswith("pid="):
                try:
                    return int(line.split("=", 1)[1])
                except ValueError:
                    return None
        return None

    def _remove_stale(self) -> None:
        self.logger.warning("Removing stale run lock", lock_file=self.path)
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
