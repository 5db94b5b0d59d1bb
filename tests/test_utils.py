"""Tests for CLI display helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from trackline.models import Issue, Status
from trackline.utils import (
    format_issue_row, format_time_ago, priority_label, status_symbol, truncate,
)

NOW = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("delta,expected", [
    (timedelta(seconds=30), "just now"),
    (timedelta(minutes=5), "5m ago"),
    (timedelta(hours=3), "3h ago"),
    (timedelta(days=2), "2d ago"),
    (timedelta(days=65), "2mo ago"),
    (timedelta(days=800), "2y ago"),
])
def test_format_time_ago(delta, expected):
    assert format_time_ago(NOW - delta, NOW) == expected


def test_truncate():
    assert truncate("short") == "short"
    assert truncate("x" * 70, 10) == "xxxxxxx..."


def test_priority_and_status():
    assert priority_label(0) == "critical"
    assert priority_label(9) == "P9"
    assert status_symbol(Status.CLOSED) == "x"
    assert status_symbol("review") == "?"


def test_format_issue_row():
    issue = Issue(id="test-abc", title="Fix the thing", priority=1, issue_type="bug",
                  created_at=NOW - timedelta(hours=2), updated_at=NOW, labels=["ui", "api"])
    assert format_issue_row(issue, now=NOW) == (
        "[ ] test-abc             P1 Fix the thing  (2h ago)")
    long_row = format_issue_row(issue, long_format=True, now=NOW)
    assert "bug" in long_row
    assert "[api, ui]" in long_row
