"""Unit tests for RiskyToolDetector."""

import json

import pytest

from agent_queue.services.risky_tool_detector import RiskyToolDetector


class TestRiskyToolDetector:
    """Test risky tool detection."""

    def setup_method(self):
        self.detector = RiskyToolDetector()

    @pytest.mark.parametrize(
        "command,reason",
        [
            ("git push origin main", "git push: pushes code to remote"),
            ("git commit -m 'wip'", "git commit: creates a commit"),
            ("rm -rf build/", "rm -rf: recursive force delete"),
            ("psql -c 'DROP TABLE users'", "SQL DROP statement"),
            ("sudo apt install jq", "sudo: elevated privileges"),
        ],
    )
    def test_shell_patterns(self, command, reason):
        detections = self.detector.check("Bash", json.dumps({"command": command}))
        assert reason in [d.reason for d in detections]
        assert detections[0].tool_name == "Bash"

    def test_case_insensitive(self):
        assert self.detector.is_risky("BASH", '{"command": "GIT PUSH --force"}')

    def test_multiple_patterns_reported_in_order(self):
        detections = self.detector.check("shell", "git commit -am x && git push")
        assert [d.pattern for d in detections] == ["git push", "git commit"]

    def test_safe_shell_command(self):
        assert self.detector.check("Bash", '{"command": "ls -la && pytest -q"}') == []

    @pytest.mark.parametrize(
        "path,reason",
        [
            ("/repo/.env", "writing to .env file"),
            ("/repo/config/credentials", "writing to credentials file"),
            ("/home/u/.ssh/authorized_keys", "writing to .ssh directory"),
            ("/home/u/.gitconfig", "writing to .gitconfig"),
            ("/repo/.github/workflows/ci.yml", "writing to GitHub Actions workflow"),
        ],
    )
    def test_write_patterns(self, path, reason):
        detections = self.detector.check("Write", json.dumps({"file_path": path}))
        assert [d.reason for d in detections] == [reason]

    def test_env_lookalikes_are_safe(self):
        assert not self.detector.is_risky("Edit", '{"file_path": "/repo/.envrc"}')
        assert not self.detector.is_risky("Edit", '{"file_path": "/repo/src/environment.py"}')
        assert not self.detector.is_risky("Write", '{"file_path": "/repo/credentials_test.py"}')

    def test_other_tools_never_risky(self):
        assert self.detector.check("Read", '{"file_path": "/repo/.env"}') == []
        assert self.detector.check("Grep", '{"pattern": "git push"}') == []

    def test_empty_input(self):
        assert self.detector.check("Bash", "") == []
        assert self.detector.check(None, None) == []
