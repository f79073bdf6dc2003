"""Signal handling utilities for graceful shutdown."""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from types import FrameType
from typing import Callable, Dict, Iterator, Optional

from ..services.task_orchestrator import TaskOrchestrator
from ..services.task_queue_state import TaskQueueState
from ..utils.logging import get_logger


class SignalHandler:
    """Stop the orchestrator and flush the queue on SIGINT or SIGTERM."""

    def __init__(self, orchestrator: TaskOrchestrator, queue_state: TaskQueueState):
        self.orchestrator = orchestrator
        self.queue_state = queue_state
        self.shutdown_requested = threading.Event()
        self._original_handlers: Dict[int, Callable] = {}
        self._registered = False
        self._interruptible = False
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def register(self) -> None:
        """Register SIGINT and SIGTERM handlers."""
        if self._registered:
            return

        for sig, handler in (
            (signal.SIGINT, self.handle_sigint),
            (signal.SIGTERM, self.handle_sigterm),
        ):
            self._original_handlers[sig] = signal.getsignal(sig)
            signal.signal(sig, handler)  # type: ignore[arg-type]

        self._registered = True

    def restore(self) -> None:
        """Restore previously registered handlers."""
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()
        self._registered = False

    def handle_sigint(self, signum: int, frame: Optional[FrameType]) -> None:
        """Handle SIGINT (Ctrl+C)."""
        self._log_signal("SIGINT", signum)
        self.shutdown()
        self._interrupt_if_blocked()

    def handle_sigterm(self, signum: int, frame: Optional[FrameType]) -> None:
        """Handle SIGTERM."""
        self._log_signal("SIGTERM", signum)
        self.shutdown()
        self._interrupt_if_blocked()

    @contextmanager
    def interruptible(self) -> Iterator[None]:
        """Let a signal abort a blocking call, such as a prompt, in this block.

        The shutdown still happens first; KeyboardInterrupt is then raised
        into the blocked call.
        """
        self._interruptible = True
        try:
            yield
        finally:
            self._interruptible = False

    def shutdown(self) -> None:
        """Stop scheduling, then persist the queue synchronously."""
        if self.shutdown_requested.is_set():
            return
        self.shutdown_requested.set()
        try:
            self.orchestrator.stop()
        finally:
            # Persist even if stopping failed
            if not self.queue_state.save_immediately():
                self.logger.warning("Queue was not saved on shutdown")

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #
    def _interrupt_if_blocked(self) -> None:
        if self._interruptible:
            raise KeyboardInterrupt

    def _log_signal(self, name: str, signum: int) -> None:
        self.logger.info(
            f"{name} received, initiating shutdown", signal=name, signum=signum
        )
