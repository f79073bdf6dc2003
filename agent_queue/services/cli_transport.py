"""CLITransport service wrapping one agent CLI process.

Provides the start/send/interrupt/terminate surface runners build on:
stdout is read line by line on a daemon thread and handed to a callback,
stderr is drained into a bounded buffer, and the exit callback fires once
the output stream closes.
"""

import os
import shutil
import signal
import subprocess
import threading
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional

import psutil

from ..exceptions import TransportError, with_context
from ..utils.logging import get_logger

LineCallback = Callable[[str], None]
ExitCallback = Callable[[int, str], None]

COMMON_INSTALL_DIRS = (
    "~/.local/bin",
    "~/.claude/local",
    "~/bin",
    "/usr/local/bin",
    "/opt/homebrew/bin",
)

logger = get_logger(__name__)


def augmented_path(extra_dirs: Iterable[str] = COMMON_INSTALL_DIRS) -> str:
    """PATH with the usual per-user install locations prepended."""
    dirs = [os.path.expanduser(d) for d in extra_dirs]
    existing = os.environ.get("PATH", os.defpath)
    return os.pathsep.join(dirs + [existing])


def _is_executable(path: Optional[str]) -> bool:
    return bool(path) and os.path.isfile(path) and os.access(path, os.X_OK)


def resolve_cli_path(
    name: str,
    env_var: Optional[str] = None,
    configured_path: Optional[str] = None,
    extra_dirs: Iterable[str] = COMMON_INSTALL_DIRS,
) -> Optional[str]:
    """Locate an agent CLI executable.

    Order: configured path, environment variable, common install
    directories, then a PATH lookup.

    Returns:
        Absolute path to the executable, or None if not installed
    """
    if configured_path:
        expanded = os.path.expanduser(configured_path)
        if _is_executable(expanded):
            return expanded

    if env_var:
        from_env = os.environ.get(env_var)
        if _is_executable(from_env):
            return from_env

    for directory in extra_dirs:
        candidate = os.path.join(os.path.expanduser(directory), name)
        if _is_executable(candidate):
            return candidate

    return shutil.which(name, path=augmented_path(extra_dirs))


class CLITransport:
    """One agent CLI process with line-oriented output callbacks."""

    def __init__(
        self,
        command: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        use_stdin: bool = True,
        stderr_tail_lines: int = 200,
    ):
        if not command:
            raise ValueError("Command cannot be empty")
        self.command = list(command)
        self.cwd = cwd
        self.env = env
        self.use_stdin = use_stdin

        self._process: Optional[subprocess.Popen] = None
        self._stderr_tail = deque(maxlen=stderr_tail_lines)
        self._stdin_lock = threading.Lock()
        self._exit_fired = threading.Event()
        self._reader: Optional[threading.Thread] = None
        self._stderr_reader: Optional[threading.Thread] = None
        self._on_line: Optional[LineCallback] = None
        self._on_exit: Optional[ExitCallback] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def start(self, on_line: LineCallback, on_exit: ExitCallback) -> None:
        """Spawn the process and begin streaming its output.

        Raises:
            TransportError: If the executable cannot be started
        """
        if self._process is not None:
            raise TransportError("Transport already started")

        self._on_line = on_line
        self._on_exit = on_exit

        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        env["PATH"] = augmented_path() if "PATH" not in (self.env or {}) else env["PATH"]

        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE if self.use_stdin else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                cwd=self.cwd,
                env=env,
                shell=False,
                start_new_session=os.name != "nt",
            )
        except (FileNotFoundError, PermissionError) as e:
            raise TransportError(
                f"CLI not found: {self.command[0]}",
                details={"command": self.command[0], "error": str(e)},
            ) from e
        except OSError as e:
            raise with_context(
                TransportError(f"Failed to start CLI process: {e}"),
                {"command": self.command[0], "cwd": self.cwd},
            ) from e

        logger.debug("CLI process started", pid=self._process.pid, command=self.command[0])

        self._stderr_reader = threading.Thread(
            target=self._drain_stderr, name="cli-stderr", daemon=True
        )
        self._reader = threading.Thread(
            target=self._read_stdout, name="cli-stdout", daemon=True
        )
        self._stderr_reader.start()
        self._reader.start()

    def send(self, text: str) -> None:
        """Write one line to the process stdin.

        Raises:
            TransportError: If stdin is unavailable or the pipe is closed
        """
        with self._stdin_lock:
            process = self._process
            if process is None or process.stdin is None or process.stdin.closed:
                raise TransportError("CLI stdin is not available")
            try:
                process.stdin.write(text + "\n")
                process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                raise TransportError(f"Failed to write to CLI: {e}") from e

    def close_stdin(self) -> None:
        with self._stdin_lock:
            process = self._process
            if process is not None and process.stdin and not process.stdin.closed:
                try:
                    process.stdin.close()
                except OSError:
                    pass

    def interrupt(self) -> None:
        """Ask the CLI to stop gracefully (SIGINT, or terminate on Windows)."""
        if not self.is_running:
            return
        try:
            if os.name == "nt":
                self._process.terminate()
            else:
                psutil.Process(self._process.pid).send_signal(signal.SIGINT)
        except (psutil.NoSuchProcess, ProcessLookupError):
            pass

    def terminate(self, timeout: float = 3.0) -> None:
        """Terminate the process tree, killing whatever outlives ``timeout``."""
        if not self.is_running:
            return
        try:
            parent = psutil.Process(self._process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
        _, alive = psutil.wait_procs(procs, timeout=timeout)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
        if alive:
            logger.warning("Force-killed CLI processes", pids=[p.pid for p in alive])

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the exit callback has fired."""
        return self._exit_fired.wait(timeout)

    def _read_stdout(self) -> None:
        process = self._process
        try:
            for raw in process.stdout:
                line = raw.rstrip("\r\n")
                if not line:
                    continue
                try:
                    self._on_line(line)
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Line handler failed", pid=process.pid)
        except (OSError, ValueError) as e:
            logger.debug("CLI stdout closed", pid=process.pid, error=str(e))
        finally:
            returncode = process.wait()
            if self._stderr_reader is not None:
                self._stderr_reader.join(timeout=1.0)
            self._fire_exit(returncode)

    def _drain_stderr(self) -> None:
        process = self._process
        try:
            for raw in process.stderr:
                line = raw.rstrip("\r\n")
                if line:
                    self._stderr_tail.append(line)
        except (OSError, ValueError):
            pass

    def _fire_exit(self, returncode: int) -> None:
        if self._exit_fired.is_set():
            return
        self._exit_fired.set()
        logger.debug("CLI process exited", pid=self.pid, returncode=returncode)
        try:
            self._on_exit(returncode, self.stderr_tail)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Exit handler failed", pid=self.pid)
