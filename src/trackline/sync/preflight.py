"""Read-only checks run before an export or import.

Each check reports pass, warn or fail with a remediation hint. Nothing here
writes to the database or the filesystem.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from trackline.errors import IntegrityError, TracklineError
from trackline.sync.export import ExportConfig
from trackline.sync.importer import ImportConfig
from trackline.sync.jsonl import get_issue_ids_from_jsonl, iter_jsonl_records, scan_conflict_markers
from trackline.sync.path import validate_sync_path

if TYPE_CHECKING:
    from trackline.storage.sqlite_store import SQLiteStorage

logger = logging.getLogger(__name__)


class PreflightCheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class PreflightCheck:
    name: str
    description: str
    status: PreflightCheckStatus
    message: str
    remediation: str | None = None


@dataclass
class PreflightResult:
    checks: list[PreflightCheck] = field(default_factory=list)
    overall_status: PreflightCheckStatus = PreflightCheckStatus.PASS

    def add(self, check: PreflightCheck) -> None:
        if check.status is PreflightCheckStatus.FAIL:
            self.overall_status = PreflightCheckStatus.FAIL
        elif (check.status is PreflightCheckStatus.WARN
              and self.overall_status is not PreflightCheckStatus.FAIL):
            self.overall_status = PreflightCheckStatus.WARN
        logger.debug("preflight %s: %s (%s)", check.name, check.status.value, check.message)
        self.checks.append(check)

    def passed(self, name: str, description: str, message: str) -> None:
        self.add(PreflightCheck(name, description, PreflightCheckStatus.PASS, message))

    def warned(self, name: str, description: str, message: str, remediation: str) -> None:
        self.add(PreflightCheck(name, description, PreflightCheckStatus.WARN, message, remediation))

    def failed(self, name: str, description: str, message: str, remediation: str) -> None:
        self.add(PreflightCheck(name, description, PreflightCheckStatus.FAIL, message, remediation))

    def is_ok(self) -> bool:
        return self.overall_status is PreflightCheckStatus.PASS

    def has_no_failures(self) -> bool:
        return self.overall_status is not PreflightCheckStatus.FAIL

    def failures(self) -> list[PreflightCheck]:
        return [c for c in self.checks if c.status is PreflightCheckStatus.FAIL]

    def warnings(self) -> list[PreflightCheck]:
        return [c for c in self.checks if c.status is PreflightCheckStatus.WARN]

    def into_result(self) -> PreflightResult:
        """Return self, or raise IntegrityError listing every failed check."""
        if self.has_no_failures():
            return self
        lines = ["preflight checks failed:"]
        for check in self.failures():
            lines.append(f"  - {check.name}: {check.message}")
            if check.remediation:
                lines.append(f"    hint: {check.remediation}")
        raise IntegrityError("\n".join(lines), "file")


def _is_external(path: str, data_dir: str) -> bool:
    root = os.path.realpath(data_dir)
    target = os.path.realpath(os.path.abspath(path))
    try:
        return os.path.commonpath([root, target]) != root
    except ValueError:
        return True


def _check_data_dir(result: PreflightResult, data_dir: str | None) -> None:
    if data_dir is None:
        return
    if os.path.isdir(data_dir):
        result.passed("data_dir_exists", "Data directory exists", f"found: {data_dir}")
    else:
        result.failed("data_dir_exists", "Data directory exists", f"not found: {data_dir}",
                      "run 'tl init' to create the data directory")


def _check_path(result: PreflightResult, path: str, data_dir: str | None,
                allow_external: bool, direction: str) -> None:
    if data_dir is None:
        return
    description = f"{direction} path is within the allowlist"
    check = validate_sync_path(path, data_dir, allow_external)
    if not check.allowed:
        result.failed("path_validation", description, f"path rejected: {check.reason()}",
                      "use a path inside the data directory or allow an external JSONL path")
    elif allow_external and _is_external(path, data_dir):
        result.warned("path_validation", description, f"{path} is outside {data_dir}",
                      "prefer the JSONL file inside the data directory")
    else:
        result.passed("path_validation", description, f"{path} validated")


def preflight_export(store: SQLiteStorage, output_path: str | os.PathLike,
                     config: ExportConfig | None = None) -> PreflightResult:
    config = config or ExportConfig()
    output_path = os.fspath(output_path)
    result = PreflightResult()

    _check_data_dir(result, config.data_dir)
    _check_path(result, output_path, config.data_dir, config.allow_external_jsonl, "output")

    try:
        count = store.count_issues()
        db_ids = {issue.id for issue in store.iter_issues_for_export()}
    except TracklineError as e:
        result.failed("database_accessible", "Database is accessible",
                      f"cannot read database: {e.message}", "check the database file")
        return result
    result.passed("database_accessible", "Database is accessible", f"{count} issues")

    try:
        jsonl_ids = get_issue_ids_from_jsonl(output_path)
    except (TracklineError, OSError) as e:
        result.warned("empty_database_safety", "Export will not erase the JSONL file",
                      f"cannot read existing {output_path}: {e}",
                      "inspect the file before overwriting it")
        return result

    if not db_ids and jsonl_ids and not config.force:
        result.failed("empty_database_safety", "Export will not erase the JSONL file",
                      f"database is empty but {output_path} has {len(jsonl_ids)} issues",
                      "import the JSONL file first, or force the export")
    else:
        result.passed("empty_database_safety", "Export will not erase the JSONL file",
                      "no data loss from an empty database")

    missing = sorted(jsonl_ids - db_ids)
    if db_ids and missing and not config.force:
        preview = ", ".join(missing[:10])
        result.failed("stale_database_safety", "Database holds every issue in the JSONL file",
                      f"{len(missing)} issue(s) missing from the database: {preview}",
                      "import the JSONL file first, or force the export")
    else:
        result.passed("stale_database_safety", "Database holds every issue in the JSONL file",
                      "database is not stale")
    return result


def preflight_import(input_path: str | os.PathLike,
                     config: ImportConfig | None = None) -> PreflightResult:
    config = config or ImportConfig()
    input_path = os.fspath(input_path)
    result = PreflightResult()

    _check_data_dir(result, config.data_dir)
    _check_path(result, input_path, config.data_dir, config.allow_external_jsonl, "input")

    if not os.path.isfile(input_path):
        result.failed("file_readable", "Input file exists and is readable",
                      f"file not found: {input_path}", "check the path or export first")
        return result
    try:
        markers = scan_conflict_markers(input_path)
    except OSError as e:
        result.failed("file_readable", "Input file exists and is readable",
                      f"cannot read file: {e}", "check file permissions")
        return result
    result.passed("file_readable", "Input file exists and is readable", f"{input_path} readable")

    if markers:
        lines = ", ".join(str(m.line) for m in markers[:5])
        result.failed("no_conflict_markers", "No merge conflict markers",
                      f"{len(markers)} conflict marker(s) at lines {lines}",
                      "resolve the merge conflict in the JSONL file first")
    else:
        result.passed("no_conflict_markers", "No merge conflict markers", "none found")

    try:
        count = sum(1 for _ in iter_jsonl_records(input_path))
    except TracklineError as e:
        result.failed("jsonl_parseable", "Every line is valid JSON", e.message,
                      "fix or remove the malformed line")
    else:
        result.passed("jsonl_parseable", "Every line is valid JSON", f"{count} records")
    return result
