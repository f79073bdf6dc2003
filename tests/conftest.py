"""Test configuration for path adjustments and data directory isolation."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

OVERRIDE_VARS = (
    "AGENT_QUEUE_LOG_LEVEL",
    "AGENT_QUEUE_TASK_TIMEOUT",
    "AGENT_QUEUE_MAX_RETRIES",
    "AGENT_QUEUE_CLAUDE_MODEL",
    "AGENT_QUEUE_OPENCODE_MODEL",
    "CLAUDE_PATH",
    "OPENCODE_PATH",
)


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: multi-component tests with threads or processes")


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Point the data directory at a temp dir so no test touches the home dir."""
    data_dir = tmp_path / "agent-queue-data"
    monkeypatch.setenv("AGENT_QUEUE_DATA_DIR", str(data_dir))
    for name in OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)
    return data_dir


@pytest.fixture
def fake_cli(tmp_path):
    """Write an executable Python script that stands in for an agent CLI.

    Returns a function taking the script body and returning its path.
    """

    def _make(body: str, name: str = "fake-agent") -> str:
        path = tmp_path / name
        path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        os.chmod(path, 0o755)
        return str(path)

    return _make


@pytest.fixture
def foreign_run_lock(isolated_data_dir):
    """Make the queue look like it is being run by another live process.

    Yields the stand-in process; kill it to leave a stale lock behind.
    """
    owner = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
    tasks_dir = isolated_data_dir / "tasks"
    tasks_dir.mkdir(parents=True, exist_ok=True)
    (tasks_dir / "run.lock").write_text(f"pid={owner.pid}\nstarted_at=test\n", encoding="utf-8")
    try:
        yield owner
    finally:
        owner.kill()
        owner.wait()
