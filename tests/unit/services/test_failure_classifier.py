"""Tests for failure classification and backoff."""

import pytest

from agent_queue.models.queued_task import FailureKind
from agent_queue.services.failure_classifier import (
    classify_failure_message,
    classify_process_crash,
    classify_timeout,
    compute_backoff,
)


@pytest.mark.parametrize(
    "message,rule,kind",
    [
        ("API Error: 429 Too Many Requests", "rate_limit", FailureKind.TRANSIENT),
        ("Overloaded, please retry", "rate_limit", FailureKind.TRANSIENT),
        ("connect ECONNRESET 1.2.3.4:443", "network", FailureKind.TRANSIENT),
        ("Invalid API key. Please run /login", "access_or_auth", FailureKind.PERMANENT),
        ("Credit balance too low: billing required", "billing_or_quota", FailureKind.PERMANENT),
        ("Unknown model: sonnet-9", "model_not_available", FailureKind.PERMANENT),
    ],
)
def test_classify_failure_message(message, rule, kind):
    result = classify_failure_message(message)
    assert result.matched_rule == rule
    assert result.failure_kind == kind


def test_permanent_rules_win_over_transient():
    """A quota error mentioning a retry is still permanent."""
    result = classify_failure_message("Quota exceeded, try again later")
    assert result.matched_rule == "billing_or_quota"
    assert not result.is_transient


def test_unclassified_uses_default():
    assert classify_failure_message("something odd").failure_kind == FailureKind.PERMANENT
    result = classify_failure_message("", default=FailureKind.TRANSIENT)
    assert result.matched_rule == "unclassified"
    assert result.is_transient


def test_crash_and_timeout_are_transient():
    assert classify_process_crash().is_transient
    assert classify_timeout().is_transient


def test_compute_backoff_doubles_and_caps():
    assert [compute_backoff(2.0, n, 300) for n in range(4)] == [2.0, 4.0, 8.0, 16.0]
    assert compute_backoff(2.0, 20, 300) == 300
    assert compute_backoff(0, 3, 300) == 0.0
