"""RiskyToolDetector service for the approval gate.

Agent CLIs execute tools themselves, so detection happens after the fact:
a match pauses queue progression until a human approves or rejects the
task. Matching is case-insensitive substring search, and false positives
are acceptable.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from ..utils.logging import get_logger

SHELL_TOOLS = frozenset({"bash", "execute", "shell"})
WRITE_TOOLS = frozenset({"write", "create", "edit"})

# Patterns are lowercase; input is lowercased before comparison.
RISKY_SHELL_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("git push", "git push: pushes code to remote"),
    ("git commit", "git commit: creates a commit"),
    ("rm -rf", "rm -rf: recursive force delete"),
    ("rm -r ", "rm -r: recursive delete"),
    ("drop ", "SQL DROP statement"),
    ("delete from", "SQL DELETE statement"),
    ("truncate", "SQL TRUNCATE statement"),
    ("sudo ", "sudo: elevated privileges"),
    ("chmod ", "chmod: permission change"),
    ("chown ", "chown: ownership change"),
)

# Tool input is usually JSON, so a file name ends at any non-name character.
_CREDENTIALS_FILE = re.compile(r"/credentials(?![\w.-])")

# A separator is required before ".env" so "environment.py" does not match.
RISKY_WRITE_PATTERNS: Tuple[Tuple[str, Callable[[str], bool], str], ...] = (
    (
        "/.env",
        lambda text: "/.env" in text and "/.envrc" not in text,
        "writing to .env file",
    ),
    (
        "/credentials",
        lambda text: bool(_CREDENTIALS_FILE.search(text)),
        "writing to credentials file",
    ),
    ("/.ssh/", lambda text: "/.ssh/" in text, "writing to .ssh directory"),
    ("/.gitconfig", lambda text: "/.gitconfig" in text, "writing to .gitconfig"),
    (
        "/.github/workflows",
        lambda text: "/.github/workflows" in text,
        "writing to GitHub Actions workflow",
    ),
)


@dataclass(frozen=True)
class RiskyDetection:
    """A detected risky operation."""

    tool_name: str
    reason: str
    pattern: str


class RiskyToolDetector:
    """Service checking tool invocations for dangerous operations."""

    def __init__(
        self,
        shell_patterns: Sequence[Tuple[str, str]] = RISKY_SHELL_PATTERNS,
        write_patterns: Sequence[
            Tuple[str, Callable[[str], bool], str]
        ] = RISKY_WRITE_PATTERNS,
    ):
        self.shell_patterns = tuple(shell_patterns)
        self.write_patterns = tuple(write_patterns)
        self.logger = get_logger(__name__)
        self.logger.add_context(service="risky_tool_detector")

    def check(self, tool_name: str, tool_input: str) -> List[RiskyDetection]:
        """Return every risky pattern found in one tool invocation.

        Args:
            tool_name: Tool name as reported by the agent
            tool_input: Raw tool input, usually a JSON string

        Returns:
            Detections in pattern order, empty when the call looks safe
        """
        name = (tool_name or "").lower()
        text = (tool_input or "").lower()

        if name in SHELL_TOOLS:
            detections = [
                RiskyDetection(tool_name, reason, pattern)
                for pattern, reason in self.shell_patterns
                if pattern in text
            ]
        elif name in WRITE_TOOLS:
            detections = [
                RiskyDetection(tool_name, reason, pattern)
                for pattern, matches, reason in self.write_patterns
                if matches(text)
            ]
        else:
            return []

        if detections:
            self.logger.warning(
                "Risky tool use detected",
                tool=tool_name,
                reasons=[d.reason for d in detections],
            )
        return detections

    def is_risky(self, tool_name: str, tool_input: str) -> bool:
        return bool(self.check(tool_name, tool_input))
