"""Path safety for sync I/O.

Every file the sync engine reads, writes or replaces goes through
``validate_sync_path``. Paths must carry an allowlisted name or extension
and stay inside the data directory (after resolving symlinks) unless the
caller opts into an external JSONL path. Anything inside a ``.git``
directory is rejected with no override.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from trackline.errors import UnsafePathError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".db", ".db-wal", ".db-shm", ".jsonl", ".jsonl.tmp")
ALLOWED_EXACT_NAMES = (".manifest.json", "metadata.json")


class PathValidation(str, Enum):
    ALLOWED = "allowed"
    OUTSIDE_DATA_DIR = "outside-data-dir"
    DISALLOWED_EXTENSION = "disallowed-extension"
    TRAVERSAL_ATTEMPT = "traversal-attempt"
    SYMLINK_ESCAPE = "symlink-escape"
    CANONICALIZATION_FAILED = "canonicalization-failed"
    GIT_PATH_ATTEMPT = "git-path-attempt"


@dataclass(frozen=True)
class PathCheck:
    outcome: PathValidation
    path: str
    detail: str = ""

    @property
    def allowed(self) -> bool:
        return self.outcome is PathValidation.ALLOWED

    def reason(self) -> str:
        messages = {
            PathValidation.ALLOWED: "allowed",
            PathValidation.OUTSIDE_DATA_DIR: f"path {self.path} is outside the data directory {self.detail}",
            PathValidation.DISALLOWED_EXTENSION: f"file type of {self.path} is not allowed for sync I/O",
            PathValidation.TRAVERSAL_ATTEMPT: f"path {self.path} contains '..' traversal",
            PathValidation.SYMLINK_ESCAPE: f"symlink {self.path} resolves outside the data directory ({self.detail})",
            PathValidation.CANONICALIZATION_FAILED: f"cannot resolve {self.path}: {self.detail}",
            PathValidation.GIT_PATH_ATTEMPT: f"refusing to touch git metadata: {self.path}",
        }
        return messages[self.outcome]


def _has_git_component(path: str) -> bool:
    return ".git" in Path(path).parts


def check_no_git_path(path: str | os.PathLike) -> PathCheck:
    """Reject any path with a ``.git`` component, before or after symlink resolution."""
    raw = os.fspath(path)
    if _has_git_component(raw):
        return PathCheck(PathValidation.GIT_PATH_ATTEMPT, raw)
    try:
        resolved = os.path.realpath(raw)
    except (OSError, ValueError):
        return PathCheck(PathValidation.ALLOWED, raw)
    if _has_git_component(resolved):
        return PathCheck(PathValidation.GIT_PATH_ATTEMPT, resolved)
    return PathCheck(PathValidation.ALLOWED, raw)


def _name_allowed(name: str) -> bool:
    return name in ALLOWED_EXACT_NAMES or name.endswith(ALLOWED_EXTENSIONS)


def _is_under(path: str, root: str) -> bool:
    try:
        return os.path.commonpath([path, root]) == root
    except ValueError:
        return False


def validate_sync_path(path: str | os.PathLike, data_dir: str | os.PathLike,
                       allow_external: bool = False) -> PathCheck:
    """Classify a sync path. Never raises."""
    raw = os.fspath(path)

    git_check = check_no_git_path(raw)
    if not git_check.allowed:
        logger.warning("sync path rejected: %s", git_check.reason())
        return git_check

    if ".." in Path(raw).parts:
        result = PathCheck(PathValidation.TRAVERSAL_ATTEMPT, raw)
        logger.warning("sync path rejected: %s", result.reason())
        return result

    name = os.path.basename(raw)
    if allow_external:
        if not (name.endswith(".jsonl") or name.endswith(".jsonl.tmp")):
            result = PathCheck(PathValidation.DISALLOWED_EXTENSION, raw)
            logger.warning("sync path rejected: %s", result.reason())
            return result
        logger.info("using external JSONL path %s", raw)
        return PathCheck(PathValidation.ALLOWED, raw)

    try:
        data_abs = os.path.abspath(os.fspath(data_dir))
        data_real = os.path.realpath(data_abs)
        path_abs = os.path.abspath(raw)
        path_real = os.path.realpath(path_abs)
    except (OSError, ValueError) as e:
        result = PathCheck(PathValidation.CANONICALIZATION_FAILED, raw, str(e))
        logger.warning("sync path rejected: %s", result.reason())
        return result

    if not (_is_under(path_abs, data_abs) or _is_under(path_abs, data_real)):
        result = PathCheck(PathValidation.OUTSIDE_DATA_DIR, raw, data_real)
        logger.warning("sync path rejected: %s", result.reason())
        return result

    if not _is_under(path_real, data_real):
        result = PathCheck(PathValidation.SYMLINK_ESCAPE, raw, path_real)
        logger.warning("sync path rejected: %s", result.reason())
        return result

    if not _name_allowed(name):
        result = PathCheck(PathValidation.DISALLOWED_EXTENSION, raw)
        logger.warning("sync path rejected: %s", result.reason())
        return result

    logger.debug("sync path validated: %s", raw)
    return PathCheck(PathValidation.ALLOWED, raw)


def require_valid_sync_path(path: str | os.PathLike, data_dir: str | os.PathLike,
                            allow_external: bool = False) -> str:
    """Validate and return the path as a string, raising UnsafePathError when rejected."""
    check = validate_sync_path(path, data_dir, allow_external)
    if not check.allowed:
        raise UnsafePathError(check.path, check.outcome, check.reason())
    return os.fspath(path)


def is_sync_path_allowed(path: str | os.PathLike, data_dir: str | os.PathLike) -> bool:
    return validate_sync_path(path, data_dir).allowed
