"""JSONL file helpers shared by export, import and preflight checks."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator

from trackline.errors import ConflictMarkerError, IntegrityError
from trackline.models import Issue

logger = logging.getLogger(__name__)

CONFLICT_START = "<<<<<<<"
CONFLICT_SEPARATOR = "======="
CONFLICT_END = ">>>>>>>"


class ConflictMarkerType(str, Enum):
    START = "start"
    SEPARATOR = "separator"
    END = "end"


@dataclass(frozen=True)
class ConflictMarker:
    path: str
    line: int
    kind: ConflictMarkerType
    branch: str | None = None


def detect_conflict_marker(line: str) -> tuple[ConflictMarkerType, str | None] | None:
    if line.startswith(CONFLICT_START):
        return ConflictMarkerType.START, line[len(CONFLICT_START):].strip() or None
    if line.startswith(CONFLICT_SEPARATOR):
        return ConflictMarkerType.SEPARATOR, None
    if line.startswith(CONFLICT_END):
        return ConflictMarkerType.END, line[len(CONFLICT_END):].strip() or None
    return None


def scan_conflict_markers(path: str | os.PathLike) -> list[ConflictMarker]:
    """Find merge conflict marker lines anywhere in the file."""
    markers: list[ConflictMarker] = []
    with open(path, encoding="utf-8", errors="replace") as f:
        for line_num, line in enumerate(f, 1):
            found = detect_conflict_marker(line.rstrip("\r\n"))
            if found is not None:
                markers.append(ConflictMarker(os.fspath(path), line_num, found[0], found[1]))
    return markers


def ensure_no_conflict_markers(path: str | os.PathLike) -> None:
    markers = scan_conflict_markers(path)
    if markers:
        raise ConflictMarkerError(os.fspath(path), markers)


def serialize_issue(issue: Issue) -> str:
    """One compact JSON line for an issue."""
    return json.dumps(issue.to_dict(), ensure_ascii=False, separators=(",", ":"))


def iter_jsonl_records(path: str | os.PathLike) -> Iterator[tuple[int, dict[str, Any]]]:
    """Yield (line number, object) for every non-blank line.

    Raises IntegrityError naming the line when a line is not UTF-8 or not a
    JSON object.
    """
    with open(path, "rb") as f:
        for line_num, raw in enumerate(f, 1):
            try:
                line = raw.decode("utf-8").strip()
            except UnicodeDecodeError as e:
                raise IntegrityError(
                    f"invalid UTF-8 at line {line_num} of {path}: {e.reason}",
                    "file", os.fspath(path),
                ) from e
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise IntegrityError(
                    f"invalid JSON at line {line_num} of {path}: {e}",
                    "file", os.fspath(path),
                ) from e
            if not isinstance(data, dict):
                raise IntegrityError(
                    f"line {line_num} of {path} is not a JSON object", "file", os.fspath(path))
            yield line_num, data


def read_issues_from_jsonl(path: str | os.PathLike) -> list[tuple[int, Issue]]:
    """Parse every record into an Issue, keeping its line number."""
    issues: list[tuple[int, Issue]] = []
    for line_num, data in iter_jsonl_records(path):
        try:
            issue = Issue.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise IntegrityError(
                f"malformed issue record at line {line_num} of {path}: {e}",
                "file", os.fspath(path),
            ) from e
        issues.append((line_num, issue))
    return issues


def count_issues_in_jsonl(path: str | os.PathLike) -> int:
    if not os.path.exists(path):
        return 0
    return sum(1 for _ in iter_jsonl_records(path))


def get_issue_ids_from_jsonl(path: str | os.PathLike) -> set[str]:
    if not os.path.exists(path):
        return set()
    return {data["id"] for _, data in iter_jsonl_records(path) if isinstance(data.get("id"), str)}


def compute_jsonl_hash(path: str | os.PathLike) -> str:
    """SHA-256 of the file bytes. Matches the hash export computes while writing."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()
