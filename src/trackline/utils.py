"""Display helpers for the tl CLI."""

from __future__ import annotations

from datetime import datetime

from trackline.models import Issue, Status, now_utc

PRIORITY_LABELS = {0: "critical", 1: "high", 2: "medium", 3: "low", 4: "backlog"}

STATUS_SYMBOLS = {
    Status.OPEN: " ",
    Status.IN_PROGRESS: ">",
    Status.BLOCKED: "!",
    Status.DEFERRED: "~",
    Status.CLOSED: "x",
    Status.TOMBSTONE: "-",
    Status.PINNED: "^",
}

# (upper bound in seconds, divisor, suffix), checked in order
_AGE_UNITS = (
    (60 * 60, 60, "m"),
    (24 * 60 * 60, 60 * 60, "h"),
    (30 * 24 * 60 * 60, 24 * 60 * 60, "d"),
    (365 * 24 * 60 * 60, 30 * 24 * 60 * 60, "mo"),
)


def format_priority(priority: int) -> str:
    return f"P{priority}"


def priority_label(priority: int) -> str:
    return PRIORITY_LABELS.get(priority, format_priority(priority))


def status_symbol(status: str) -> str:
    """One character per status; custom statuses show as '?'."""
    return STATUS_SYMBOLS.get(status, "?")


def format_time_ago(dt: datetime, now: datetime | None = None) -> str:
    """Format a datetime relative to now, e.g. ``3h ago``."""
    seconds = int(((now or now_utc()) - dt).total_seconds())
    if seconds < 60:
        return "just now"
    for bound, divisor, suffix in _AGE_UNITS:
        if seconds < bound:
            return f"{seconds // divisor}{suffix} ago"
    return f"{seconds // (365 * 24 * 60 * 60)}y ago"


def truncate(s: str, max_len: int = 60) -> str:
    if len(s) <= max_len:
        return s
    return s[:max_len - 3] + "..."


def format_issue_row(issue: Issue, long_format: bool = False,
                     now: datetime | None = None) -> str:
    """One line per issue for list and ready output."""
    head = f"[{status_symbol(issue.status)}] {issue.id:<20} {format_priority(issue.priority)}"
    age = format_time_ago(issue.created_at, now)
    if not long_format:
        return f"{head} {truncate(issue.title, 50)}  ({age})"
    labels = f" [{', '.join(sorted(issue.labels))}]" if issue.labels else ""
    return (f"{head} {issue.issue_type or 'task':<8} {issue.assignee or '-':<15} "
            f"{truncate(issue.title, 50)}{labels}  ({age})")
