"""Exception taxonomy for trackline.

Every error carries enough structure (entity type, entity id, message) for a
caller to render an actionable message without parsing strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

__all__ = [
    "TracklineError",
    "FieldError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "IntegrityError",
    "UnsafePathError",
    "ConflictMarkerError",
    "StorageError",
    "LockTimeoutError",
]


class TracklineError(Exception):
    """Base class for all trackline errors."""

    def __init__(self, message: str, entity_type: str = "", entity_id: str = ""):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id

    def detail(self) -> dict[str, Any]:
        d: dict[str, Any] = {"error": type(self).__name__, "message": self.message}
        if self.entity_type:
            d["entity_type"] = self.entity_type
        if self.entity_id:
            d["entity_id"] = self.entity_id
        return d


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationError(TracklineError):
    """A field is out of range, too long, or malformed."""

    def __init__(self, field_errors: list[FieldError], entity_type: str = "issue",
                 entity_id: str = ""):
        self.field_errors = list(field_errors)
        summary = "; ".join(str(e) for e in self.field_errors) or "invalid value"
        prefix = f"{entity_type} {entity_id}: " if entity_id else ""
        super().__init__(f"validation failed: {prefix}{summary}", entity_type, entity_id)

    @classmethod
    def single(cls, field: str, message: str, entity_type: str = "issue",
               entity_id: str = "") -> ValidationError:
        return cls([FieldError(field, message)], entity_type, entity_id)

    def detail(self) -> dict[str, Any]:
        d = super().detail()
        d["fields"] = [{"field": e.field, "message": e.message} for e in self.field_errors]
        return d


class NotFoundError(TracklineError):
    """An issue or dependency target does not exist."""

    def __init__(self, entity_id: str, entity_type: str = "issue", message: str = ""):
        super().__init__(message or f"{entity_type} not found: {entity_id}",
                         entity_type, entity_id)


class ConflictError(TracklineError):
    """The operation would violate a graph or uniqueness invariant."""

    def __init__(self, message: str, kind: str, entity_type: str = "issue",
                 entity_id: str = ""):
        super().__init__(message, entity_type, entity_id)
        self.kind = kind

    def detail(self) -> dict[str, Any]:
        d = super().detail()
        d["kind"] = self.kind
        return d


class IntegrityError(TracklineError):
    """Input data or a file on disk cannot be trusted."""

    def __init__(self, message: str, entity_type: str = "file", entity_id: str = ""):
        super().__init__(message, entity_type, entity_id)


class UnsafePathError(IntegrityError):
    """A sync path failed the path-safety contract."""

    def __init__(self, path: str, outcome: Any, message: str = ""):
        self.path = path
        self.outcome = outcome
        super().__init__(message or f"unsafe sync path {path}: {outcome}", "path", path)


class ConflictMarkerError(IntegrityError):
    """A JSONL file contains version-control merge conflict markers."""

    def __init__(self, path: str, markers: list[Any]):
        self.path = path
        self.markers = list(markers)
        lines = ", ".join(str(m.line) for m in self.markers[:5])
        super().__init__(
            f"merge conflict markers found in {path} (lines {lines}); "
            "resolve the conflict before importing",
            "file", path,
        )


class StorageError(TracklineError):
    """The underlying database failed."""

    def __init__(self, message: str, entity_type: str = "database", entity_id: str = ""):
        super().__init__(message, entity_type, entity_id)


class LockTimeoutError(StorageError):
    """The database lock could not be acquired within the configured timeout."""

    def __init__(self, db_path: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(
            f"timed out after {timeout_ms}ms waiting for the database lock on {db_path}",
            "database", db_path,
        )
