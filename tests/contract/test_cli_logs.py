"""Contract tests for CLI logs command."""

import json
import os

from click.testing import CliRunner

from agent_queue.cli.main import cli


class TestLogsCommandContract:
    """Test contract for agent-queue logs command."""

    def setup_method(self):
        """Set up test environment."""
        self.runner = CliRunner()

    def add_task(self, tmp_path):
        self.runner.invoke(cli, ["queue", "add", "Task", "--repo", str(tmp_path)])
        result = self.runner.invoke(cli, ["queue", "list", "--format", "json"])
        return json.loads(result.output)[0]["id"]

    def test_no_application_log(self):
        result = self.runner.invoke(cli, ["logs"])
        assert result.exit_code == 0
        assert "No log file found" in result.output

    def test_application_log_tail(self, isolated_data_dir):
        os.makedirs(isolated_data_dir, exist_ok=True)
        log_file = isolated_data_dir / "agent-queue.log"
        log_file.write_text("\n".join(f"line {i}" for i in range(10)) + "\n")

        result = self.runner.invoke(cli, ["logs", "--tail", "3"])
        assert result.exit_code == 0
        assert result.output.splitlines() == ["line 7", "line 8", "line 9"]

        result = self.runner.invoke(cli, ["logs", "--tail", "0"])
        assert len(result.output.splitlines()) == 10

    def test_negative_tail_rejected(self):
        result = self.runner.invoke(cli, ["logs", "--tail", "-1"])
        assert result.exit_code == 1
        assert "cannot be negative" in result.output

    def test_task_without_artifact(self, tmp_path):
        task_id = self.add_task(tmp_path)
        result = self.runner.invoke(cli, ["logs", task_id[:8]])
        assert result.exit_code == 0
        assert f"No log artifact for task {task_id[:8]}" in result.output

    def test_unknown_task(self):
        result = self.runner.invoke(cli, ["logs", "ffffffff"])
        assert result.exit_code == 1
