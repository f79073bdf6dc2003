"""Deterministic failure classification for the auto-retry policy.

Process crashes and timeouts are always transient. Errors reported by the
agent itself are classified from their text: account, auth and model
problems will not fix themselves, rate limits and network trouble might.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from ..models.queued_task import FailureKind

_BILLING_OR_QUOTA_PATTERNS = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "please run /login",
)
_MODEL_NOT_AVAILABLE_PATTERNS = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_PATTERNS = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "overloaded",
    "please retry",
    "try again later",
)
_NETWORK_PATTERNS = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
    "could not resolve host",
    "econnreset",
    "503",
    "502",
)

# Checked in order; the first matching rule wins.
_RULES = (
    ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, FailureKind.PERMANENT),
    ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, FailureKind.PERMANENT),
    ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, FailureKind.PERMANENT),
    ("rate_limit", _RATE_LIMIT_PATTERNS, FailureKind.TRANSIENT),
    ("network", _NETWORK_PATTERNS, FailureKind.TRANSIENT),
)


@dataclass(frozen=True)
class FailureClassification:
    """Normalized classification result."""

    failure_kind: FailureKind
    matched_rule: str
    matched_pattern: Optional[str] = None

    @property
    def is_transient(self) -> bool:
        return self.failure_kind == FailureKind.TRANSIENT


def classify_failure_message(
    message: str,
    default: FailureKind = FailureKind.PERMANENT,
) -> FailureClassification:
    """Classify an agent-reported error by its text.

    Args:
        message: Error text reported by the agent
        default: Kind used when no rule matches

    Returns:
        FailureClassification naming the rule that decided it
    """
    haystack = " ".join((message or "").lower().split())
    for rule, patterns, kind in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(kind, rule, pattern)
    return FailureClassification(default, "unclassified")


def classify_process_crash() -> FailureClassification:
    return FailureClassification(FailureKind.TRANSIENT, "process_crash")


def classify_timeout() -> FailureClassification:
    return FailureClassification(FailureKind.TRANSIENT, "timeout")


def _first_match(haystack: str, patterns: Sequence[str]) -> Optional[str]:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def compute_backoff(base_seconds: float, retry_count: int, max_seconds: float) -> float:
    """Exponential backoff before the attempt after ``retry_count`` retries.

    With a 2s base the delays are 2, 4, 8, ... seconds, capped at max_seconds.
    """
    if base_seconds <= 0:
        return 0.0
    return min(base_seconds * (2 ** retry_count), max_seconds)
