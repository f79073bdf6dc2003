"""TaskLogCollector service for per-attempt log artifacts.

Accumulates timestamped lines for one run attempt, enforces a byte cap and
writes the artifact to ``<logs_dir>/<task_id>-<attempt_id>.log`` when the
attempt ends. A bounded window of recent lines is kept for live display.
"""

import os
import threading
from collections import deque
from datetime import datetime
from typing import Callable, List, Optional

from ..models.system_configuration import DEFAULT_ARTIFACT_MAX_BYTES
from ..utils.logging import get_logger


def _format_megabytes(max_bytes: int) -> str:
    megabytes = max_bytes / (1024 * 1024)
    if megabytes >= 1 and megabytes == int(megabytes):
        return f"{int(megabytes)}MB"
    return f"{max_bytes} bytes"


class TaskLogCollector:
    """Capped, timestamped log of one task attempt."""

    def __init__(
        self,
        task_id: str,
        attempt_id: str,
        logs_dir: str,
        max_bytes: int = DEFAULT_ARTIFACT_MAX_BYTES,
        live_window: int = 500,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.task_id = task_id
        self.attempt_id = attempt_id
        self.logs_dir = logs_dir
        self.max_bytes = max_bytes
        self.truncation_marker = (
            f"[LOG TRUNCATED, {_format_megabytes(max_bytes)} limit reached]"
        )
        self._clock = clock
        self._lines: List[str] = []
        self._recent = deque(maxlen=live_window)
        self._size = 0
        self._truncated = False
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)
        self.logger.add_context(service="task_log_collector")

    @property
    def file_name(self) -> str:
        return f"{self.task_id}-{self.attempt_id}.log"

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def byte_count(self) -> int:
        return self._size

    def append(self, text: str) -> None:
        """Append one timestamped line, dropping it once the cap is reached."""
        stamp = self._clock().strftime("%H:%M:%S.%f")[:-3]
        line = f"[{stamp}] {text}"
        line_size = len(line.encode("utf-8")) + 1

        with self._lock:
            if self._truncated:
                return
            if self._size + line_size > self.max_bytes:
                self._truncated = True
                self._lines.append(self.truncation_marker)
                self._recent.append(self.truncation_marker)
                return
            self._lines.append(line)
            self._recent.append(line)
            self._size += line_size

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def recent_lines(self) -> List[str]:
        """Bounded window of the latest lines for live display."""
        with self._lock:
            return list(self._recent)

    @property
    def last_line(self) -> Optional[str]:
        with self._lock:
            return self._recent[-1] if self._recent else None

    def flush(self) -> Optional[str]:
        """Write the artifact and return its path.

        Returns:
            The artifact path, or None if nothing was logged or the write
            failed. A failed write leaves a marker in the live window.
        """
        with self._lock:
            if not self._lines:
                return None
            content = "\n".join(self._lines) + "\n"

        path = os.path.join(self.logs_dir, self.file_name)
        try:
            os.makedirs(self.logs_dir, exist_ok=True)
            temp_path = path + ".tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(temp_path, path)
        except OSError as exc:
            self.logger.error(
                "Failed to write task log",
                task_id=self.task_id,
                path=path,
                error=str(exc),
            )
            with self._lock:
                self._recent.append(f"[LOG WRITE FAILED: {exc}]")
            return None

        self.logger.debug(
            "Wrote task log", task_id=self.task_id, path=path, lines=len(self._lines)
        )
        return path
