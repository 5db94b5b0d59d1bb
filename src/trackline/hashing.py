"""Content hashing for change detection and import deduplication.

Only semantic fields take part in the hash. Timestamps, ownership, labels,
dependencies, comments and tombstone bookkeeping are excluded so that
metadata churn never looks like a content change.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trackline.models import Issue

SEPARATOR = b"\x00"


def content_hash(issue: Issue) -> str:
    """Return the 64-char lowercase SHA-256 hex digest of an issue's content."""
    h = hashlib.sha256()

    def write_str(s: str | None) -> None:
        # A NUL inside a value would shift field boundaries.
        h.update((s or "").replace("\x00", " ").encode("utf-8"))
        h.update(SEPARATOR)

    def write_flag(b: bool) -> None:
        h.update(b"true" if b else b"false")
        h.update(SEPARATOR)

    write_str(issue.title)
    write_str(issue.description)
    write_str(issue.design)
    write_str(issue.acceptance_criteria)
    write_str(issue.notes)
    write_str(issue.status)
    write_str(f"P{issue.priority}")
    write_str(issue.issue_type)
    write_str(issue.assignee)
    write_str(issue.external_ref)
    write_flag(issue.pinned)
    write_flag(issue.is_template)

    return h.hexdigest()
