"""Tests for TaskLogCollector."""

from datetime import datetime

from agent_queue.services.task_log_collector import TaskLogCollector


def fixed_clock():
    return datetime(2026, 1, 2, 3, 4, 5, 678000)


class TestTaskLogCollector:
    """Test capped per-attempt logs."""

    def test_lines_are_timestamped(self, tmp_path):
        collector = TaskLogCollector("task1", "att1", str(tmp_path), clock=fixed_clock)
        collector.append("hello")
        assert collector.lines() == ["[03:04:05.678] hello"]
        assert collector.last_line == "[03:04:05.678] hello"

    def test_flush_writes_artifact(self, tmp_path):
        logs_dir = tmp_path / "logs"
        collector = TaskLogCollector("task1", "att1", str(logs_dir), clock=fixed_clock)
        collector.append("one")
        collector.append("two")

        path = collector.flush()
        assert path == str(logs_dir / "task1-att1.log")
        assert (logs_dir / "task1-att1.log").read_text().splitlines() == [
            "[03:04:05.678] one",
            "[03:04:05.678] two",
        ]

    def test_empty_log_is_not_written(self, tmp_path):
        collector = TaskLogCollector("task1", "att1", str(tmp_path))
        assert collector.flush() is None
        assert list(tmp_path.iterdir()) == []

    def test_cap_truncates_once(self, tmp_path):
        collector = TaskLogCollector(
            "task1", "att1", str(tmp_path), max_bytes=1024, clock=fixed_clock
        )
        for i in range(100):
            collector.append(f"line {i} " + "x" * 40)

        lines = collector.lines()
        assert collector.truncated
        assert lines[-1] == "[LOG TRUNCATED, 1024 bytes limit reached]"
        assert lines.count(lines[-1]) == 1
        assert collector.byte_count <= 1024

    def test_default_cap_marker_names_megabytes(self, tmp_path):
        collector = TaskLogCollector("task1", "att1", str(tmp_path))
        assert collector.truncation_marker == "[LOG TRUNCATED, 5MB limit reached]"

    def test_live_window_is_bounded(self, tmp_path):
        collector = TaskLogCollector("task1", "att1", str(tmp_path), live_window=10)
        for i in range(25):
            collector.append(f"line {i}")
        recent = collector.recent_lines()
        assert len(recent) == 10
        assert recent[-1].endswith("line 24")
        assert len(collector.lines()) == 25

    def test_write_failure_is_reported_in_live_window(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        collector = TaskLogCollector("task1", "att1", str(blocker / "logs"))
        collector.append("line")

        assert collector.flush() is None
        assert collector.last_line.startswith("[LOG WRITE FAILED")
