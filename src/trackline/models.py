"""Core data models and their JSONL representation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from trackline.errors import FieldError, ValidationError
from trackline.hashing import content_hash
from trackline.id_gen import is_valid_id


# --- Status constants ---

class Status:
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CLOSED = "closed"
    TOMBSTONE = "tombstone"
    PINNED = "pinned"

    _BUILTIN = {OPEN, IN_PROGRESS, BLOCKED, DEFERRED, CLOSED, TOMBSTONE, PINNED}
    # A blocker in one of these states keeps its dependents blocked.
    UNRESOLVED = (OPEN, IN_PROGRESS, BLOCKED, DEFERRED)
    TERMINAL = (CLOSED, TOMBSTONE)

    @classmethod
    def is_builtin(cls, s: str) -> bool:
        return s in cls._BUILTIN

    @classmethod
    def is_valid(cls, s: str) -> bool:
        """Builtin statuses plus any custom single-word status."""
        return bool(s) and not any(c.isspace() for c in s)

    @classmethod
    def is_terminal(cls, s: str) -> bool:
        return s in cls.TERMINAL


# --- IssueType constants ---

class IssueType:
    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"
    DOCS = "docs"
    QUESTION = "question"

    _BUILTIN = {BUG, FEATURE, TASK, EPIC, CHORE, DOCS, QUESTION}

    @classmethod
    def is_builtin(cls, t: str) -> bool:
        return t in cls._BUILTIN

    @classmethod
    def is_valid(cls, t: str) -> bool:
        return bool(t) and not any(c.isspace() for c in t)

    @classmethod
    def normalize(cls, t: str) -> str:
        lower = t.lower()
        if lower in ("enhancement", "feat"):
            return cls.FEATURE
        if lower in ("doc", "documentation"):
            return cls.DOCS
        return lower if lower in cls._BUILTIN else t


# --- DependencyType constants ---

class DepType:
    BLOCKS = "blocks"
    PARENT_CHILD = "parent-child"
    CONDITIONAL_BLOCKS = "conditional-blocks"
    WAITS_FOR = "waits-for"
    RELATED = "related"
    RELATES_TO = "relates-to"
    DISCOVERED_FROM = "discovered-from"
    DUPLICATES = "duplicates"
    SUPERSEDES = "supersedes"
    CAUSED_BY = "caused-by"

    # Edge types that participate in readiness and cycle checks.
    _BLOCKING = {BLOCKS, PARENT_CHILD, CONDITIONAL_BLOCKS, WAITS_FOR}
    # Edge types whose open target blocks the source directly. parent-child
    # only propagates an ancestor's blocked state.
    _SEEDS = (BLOCKS, CONDITIONAL_BLOCKS, WAITS_FOR)

    @classmethod
    def affects_ready_work(cls, dep_type: str) -> bool:
        return dep_type in cls._BLOCKING

    @classmethod
    def seeds_blocking(cls, dep_type: str) -> bool:
        return dep_type in cls._SEEDS

    @classmethod
    def is_valid(cls, dep_type: str) -> bool:
        return bool(dep_type) and not any(c.isspace() for c in dep_type)


EXTERNAL_PREFIX = "external:"


def parse_external_ref(dep_id: str) -> tuple[str, str] | None:
    """Split ``external:<project>:<capability>`` into (project, capability)."""
    if not dep_id.startswith(EXTERNAL_PREFIX):
        return None
    parts = dep_id.split(":", 2)
    if len(parts) != 3 or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


# --- EventType constants ---

class EventType:
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    COMMENTED = "commented"
    CLOSED = "closed"
    REOPENED = "reopened"
    DELETED = "deleted"
    DEPENDENCY_ADDED = "dependency_added"
    DEPENDENCY_REMOVED = "dependency_removed"
    LABEL_ADDED = "label_added"
    LABEL_REMOVED = "label_removed"
    MERGED = "merged"


# --- Sort policy and limits ---

class SortPolicy(str, Enum):
    PRIORITY = "priority"
    OLDEST = "oldest"
    HYBRID = "hybrid"


MAX_TITLE_LENGTH = 500
MAX_TEXT_BYTES = 102_400
MAX_ID_LENGTH = 50
MAX_EXTERNAL_REF_LENGTH = 200
MAX_LABEL_LENGTH = 50
MAX_COMMENT_BYTES = 51_200
MAX_AUTHOR_LENGTH = 200

_LABEL_RE = re.compile(r"^[A-Za-z0-9_:\-]+$")


# --- Helper: RFC3339 timestamp handling ---

def parse_timestamp(s: str | datetime | None) -> datetime | None:
    """Parse an RFC3339 timestamp string to an aware UTC datetime."""
    if s is None:
        return None
    if isinstance(s, datetime):
        return s if s.tzinfo else s.replace(tzinfo=timezone.utc)
    s = s.strip()
    if not s:
        return None
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        dt = None
        for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z"):
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue
        if dt is None:
            raise ValueError(f"Cannot parse timestamp: {s}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime | None) -> str | None:
    """Format a datetime as RFC3339 UTC with fixed microsecond precision.

    The fixed width keeps stored values lexicographically ordered, which the
    SQL comparisons on created_at and defer_until rely on.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def now_utc() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def _str_field(d: dict, key: str, default: str | None = "") -> str | None:
    """A string field of a JSONL record. Null and absent give the default."""
    value = d.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise TypeError(f"{key}: expected a string, got {type(value).__name__}")
    return value


def _int_field(d: dict, key: str, default: int | None = 0) -> int | None:
    value = d.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{key}: expected an integer, got {type(value).__name__}")
    return value


def _record_list(d: dict, key: str) -> list[dict]:
    items = d.get(key) or []
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise TypeError(f"{key}: expected a list of objects")
    return items


# Plain string fields of an issue record; absent or null reads as "".
_RECORD_TEXT_FIELDS = (
    "id", "title", "description", "design", "acceptance_criteria", "notes", "status",
    "issue_type", "assignee", "owner", "created_by", "close_reason", "closed_by_session",
    "source_system", "deleted_by", "delete_reason", "original_type", "sender",
)


def validate_label(label: str) -> None:
    if not label:
        raise ValidationError.single("label", "cannot be empty", "label")
    if len(label) > MAX_LABEL_LENGTH:
        raise ValidationError.single("label", f"exceeds {MAX_LABEL_LENGTH} characters",
                                     "label", label)
    if not _LABEL_RE.match(label):
        raise ValidationError.single(
            "label", "invalid characters (only alphanumeric, hyphen, underscore, colon allowed)",
            "label", label,
        )


# --- Partial update sentinel ---

class _Unset:
    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# --- Dataclasses ---

@dataclass
class Dependency:
    issue_id: str
    depends_on_id: str
    type: str = DepType.BLOCKS
    created_at: datetime = field(default_factory=now_utc)
    created_by: str = ""

    def is_external(self) -> bool:
        return self.depends_on_id.startswith(EXTERNAL_PREFIX)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "issue_id": self.issue_id,
            "depends_on_id": self.depends_on_id,
            "type": self.type,
            "created_at": format_timestamp(self.created_at),
        }
        if self.created_by:
            d["created_by"] = self.created_by
        return d

    @classmethod
    def from_dict(cls, d: dict, issue_id: str = "") -> Dependency:
        if "depends_on_id" not in d:
            raise KeyError("depends_on_id")
        return cls(
            issue_id=_str_field(d, "issue_id") or issue_id,
            depends_on_id=_str_field(d, "depends_on_id"),
            type=_str_field(d, "type") or DepType.BLOCKS,
            created_at=parse_timestamp(d.get("created_at")) or now_utc(),
            created_by=_str_field(d, "created_by"),
        )


@dataclass
class Comment:
    id: int = 0
    issue_id: str = ""
    author: str = ""
    text: str = ""
    created_at: datetime = field(default_factory=now_utc)

    def validation_errors(self) -> list[FieldError]:
        errors = []
        if not self.text.strip():
            errors.append(FieldError("text", "cannot be empty"))
        elif len(self.text.encode("utf-8")) > MAX_COMMENT_BYTES:
            errors.append(FieldError("text", "exceeds 50KB"))
        if not self.author.strip():
            errors.append(FieldError("author", "cannot be empty"))
        elif len(self.author) > MAX_AUTHOR_LENGTH:
            errors.append(FieldError("author", f"exceeds {MAX_AUTHOR_LENGTH} characters"))
        return errors

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "author": self.author,
            "text": self.text,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: dict, issue_id: str = "") -> Comment:
        return cls(
            id=_int_field(d, "id") or 0,
            issue_id=_str_field(d, "issue_id") or issue_id,
            author=_str_field(d, "author"),
            text=_str_field(d, "text") or _str_field(d, "body"),
            created_at=parse_timestamp(d.get("created_at")) or now_utc(),
        )


@dataclass
class Event:
    id: int = 0
    issue_id: str = ""
    event_type: str = ""
    actor: str = ""
    old_value: str | None = None
    new_value: str | None = None
    comment: str | None = None
    created_at: datetime = field(default_factory=now_utc)


@dataclass
class Issue:
    """A tracked work item."""

    # Core identification
    id: str = ""
    content_hash: str = ""  # Internal, not exported to JSONL

    # Issue content
    title: str = ""
    description: str = ""
    design: str = ""
    acceptance_criteria: str = ""
    notes: str = ""

    # Status & workflow
    status: str = Status.OPEN
    priority: int = 2
    issue_type: str = IssueType.TASK

    # Assignment
    assignee: str = ""
    owner: str = ""
    estimated_minutes: int | None = None

    # Timestamps
    created_at: datetime = field(default_factory=now_utc)
    created_by: str = ""
    updated_at: datetime = field(default_factory=now_utc)
    closed_at: datetime | None = None
    close_reason: str = ""
    closed_by_session: str = ""

    # Time-based scheduling
    due_at: datetime | None = None
    defer_until: datetime | None = None

    # External integration
    external_ref: str | None = None
    source_system: str = ""

    # Compaction metadata
    compaction_level: int = 0
    compacted_at: datetime | None = None
    compacted_at_commit: str | None = None
    original_size: int = 0

    # Relational data (populated for export/import)
    labels: list[str] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)

    # Tombstone fields
    deleted_at: datetime | None = None
    deleted_by: str = ""
    delete_reason: str = ""
    original_type: str = ""

    # Context markers
    sender: str = ""
    ephemeral: bool = False
    pinned: bool = False
    is_template: bool = False

    def compute_content_hash(self) -> str:
        return content_hash(self)

    def is_tombstone(self) -> bool:
        return self.status == Status.TOMBSTONE

    def is_wisp(self) -> bool:
        return "-wisp-" in self.id

    def validation_errors(self) -> list[FieldError]:
        """Collect every field-level violation instead of stopping at the first."""
        errors: list[FieldError] = []

        if not self.id.strip():
            errors.append(FieldError("id", "cannot be empty"))
        elif len(self.id) > MAX_ID_LENGTH:
            errors.append(FieldError("id", f"exceeds {MAX_ID_LENGTH} characters"))
        elif not is_valid_id(self.id):
            errors.append(FieldError("id", "invalid format (expected prefix-hash)"))

        if not self.title.strip():
            errors.append(FieldError("title", "cannot be empty"))
        elif len(self.title) > MAX_TITLE_LENGTH:
            errors.append(FieldError(
                "title", f"must be {MAX_TITLE_LENGTH} characters or less (got {len(self.title)})"))

        for name in ("description", "design", "acceptance_criteria", "notes"):
            value = getattr(self, name) or ""
            if len(value.encode("utf-8")) > MAX_TEXT_BYTES:
                errors.append(FieldError(name, "exceeds 100KB"))

        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            errors.append(FieldError("priority", "must be an integer"))
        elif self.priority < 0 or self.priority > 4:
            errors.append(FieldError("priority", f"must be between 0 and 4 (got {self.priority})"))

        if not Status.is_valid(self.status):
            errors.append(FieldError("status", f"invalid status: {self.status!r}"))
        if not IssueType.is_valid(self.issue_type):
            errors.append(FieldError("issue_type", f"invalid issue type: {self.issue_type!r}"))

        if self.estimated_minutes is not None and self.estimated_minutes < 0:
            errors.append(FieldError("estimated_minutes", "cannot be negative"))

        if self.updated_at < self.created_at:
            errors.append(FieldError("updated_at", "cannot be before created_at"))

        if self.status == Status.CLOSED and self.closed_at is None:
            errors.append(FieldError("closed_at", "closed issues must have closed_at timestamp"))
        if not Status.is_terminal(self.status) and self.closed_at is not None:
            errors.append(FieldError("closed_at", "non-closed issues cannot have closed_at timestamp"))
        if self.status == Status.TOMBSTONE and self.deleted_at is None:
            errors.append(FieldError("deleted_at", "tombstone issues must have deleted_at timestamp"))
        if self.status != Status.TOMBSTONE and self.deleted_at is not None:
            errors.append(FieldError("deleted_at", "non-tombstone issues cannot have deleted_at timestamp"))

        if self.external_ref is not None:
            if len(self.external_ref) > MAX_EXTERNAL_REF_LENGTH:
                errors.append(FieldError(
                    "external_ref", f"exceeds {MAX_EXTERNAL_REF_LENGTH} characters"))
            if any(c.isspace() for c in self.external_ref):
                errors.append(FieldError("external_ref", "cannot contain whitespace"))

        return errors

    def validate(self) -> None:
        """Raise ValidationError listing every invalid field."""
        errors = self.validation_errors()
        if errors:
            raise ValidationError(errors, "issue", self.id)

    def set_defaults(self) -> None:
        """Apply default values for fields omitted during JSONL import."""
        if not self.status:
            self.status = Status.OPEN
        if not self.issue_type:
            self.issue_type = IssueType.TASK
        if self.external_ref == "":
            self.external_ref = None

    def to_dict(self) -> dict:
        """Serialize for JSONL, omitting empty optional fields."""
        d: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
        }

        if self.description:
            d["description"] = self.description
        if self.design:
            d["design"] = self.design
        if self.acceptance_criteria:
            d["acceptance_criteria"] = self.acceptance_criteria
        if self.notes:
            d["notes"] = self.notes
        d["status"] = self.status
        # 0 is a real priority (P0), never omitted
        d["priority"] = self.priority
        d["issue_type"] = self.issue_type
        if self.assignee:
            d["assignee"] = self.assignee
        if self.owner:
            d["owner"] = self.owner
        if self.estimated_minutes is not None:
            d["estimated_minutes"] = self.estimated_minutes

        # Timestamps
        d["created_at"] = format_timestamp(self.created_at)
        if self.created_by:
            d["created_by"] = self.created_by
        d["updated_at"] = format_timestamp(self.updated_at)
        if self.closed_at:
            d["closed_at"] = format_timestamp(self.closed_at)
        if self.close_reason:
            d["close_reason"] = self.close_reason
        if self.closed_by_session:
            d["closed_by_session"] = self.closed_by_session
        if self.due_at:
            d["due_at"] = format_timestamp(self.due_at)
        if self.defer_until:
            d["defer_until"] = format_timestamp(self.defer_until)

        if self.external_ref:
            d["external_ref"] = self.external_ref
        if self.source_system:
            d["source_system"] = self.source_system

        # Compaction
        if self.compaction_level:
            d["compaction_level"] = self.compaction_level
        if self.compacted_at:
            d["compacted_at"] = format_timestamp(self.compacted_at)
        if self.compacted_at_commit:
            d["compacted_at_commit"] = self.compacted_at_commit
        if self.original_size:
            d["original_size"] = self.original_size

        # Relational data
        if self.labels:
            d["labels"] = sorted(self.labels)
        if self.dependencies:
            deps = sorted(self.dependencies, key=lambda dep: (dep.depends_on_id, dep.type))
            d["dependencies"] = [dep.to_dict() for dep in deps]
        if self.comments:
            d["comments"] = [c.to_dict() for c in self.comments]

        # Tombstone
        if self.deleted_at:
            d["deleted_at"] = format_timestamp(self.deleted_at)
        if self.deleted_by:
            d["deleted_by"] = self.deleted_by
        if self.delete_reason:
            d["delete_reason"] = self.delete_reason
        if self.original_type:
            d["original_type"] = self.original_type

        if self.sender:
            d["sender"] = self.sender
        if self.ephemeral:
            d["ephemeral"] = True
        if self.pinned:
            d["pinned"] = True
        if self.is_template:
            d["is_template"] = True

        return d

    @classmethod
    def from_dict(cls, d: dict) -> Issue:
        """Deserialize a JSONL record.

        Raises TypeError when a field holds the wrong JSON type.
        """
        issue = cls()
        for name in _RECORD_TEXT_FIELDS:
            setattr(issue, name, _str_field(d, name))
        issue.priority = _int_field(d, "priority", 2)
        issue.estimated_minutes = _int_field(d, "estimated_minutes", None)
        issue.compaction_level = _int_field(d, "compaction_level")
        issue.original_size = _int_field(d, "original_size")
        issue.external_ref = _str_field(d, "external_ref", None)
        issue.compacted_at_commit = _str_field(d, "compacted_at_commit", None)

        issue.created_at = parse_timestamp(d.get("created_at")) or now_utc()
        issue.updated_at = parse_timestamp(d.get("updated_at")) or issue.created_at
        for name in ("closed_at", "due_at", "defer_until", "compacted_at", "deleted_at"):
            setattr(issue, name, parse_timestamp(d.get(name)))

        labels = d.get("labels") or []
        if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
            raise TypeError("labels: expected a list of strings")
        issue.labels = list(labels)
        issue.dependencies = [Dependency.from_dict(dep, issue.id)
                              for dep in _record_list(d, "dependencies")]
        issue.comments = [Comment.from_dict(c, issue.id) for c in _record_list(d, "comments")]

        issue.ephemeral = bool(d.get("ephemeral", False))
        issue.pinned = bool(d.get("pinned", False))
        issue.is_template = bool(d.get("is_template", False))

        issue.set_defaults()
        return issue


@dataclass
class IssueUpdate:
    """Partial patch for an issue.

    A field left at ``UNSET`` is not touched. ``None`` clears the field.
    """
    title: Any = UNSET
    description: Any = UNSET
    design: Any = UNSET
    acceptance_criteria: Any = UNSET
    notes: Any = UNSET
    status: Any = UNSET
    priority: Any = UNSET
    issue_type: Any = UNSET
    assignee: Any = UNSET
    owner: Any = UNSET
    estimated_minutes: Any = UNSET
    close_reason: Any = UNSET
    due_at: Any = UNSET
    defer_until: Any = UNSET
    external_ref: Any = UNSET
    source_system: Any = UNSET
    pinned: Any = UNSET
    is_template: Any = UNSET
    ephemeral: Any = UNSET

    REQUIRED = ("title", "status", "priority", "issue_type")

    def changes(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class IssueFilter:
    """Filter for issue list queries."""
    statuses: list[str] = field(default_factory=list)
    issue_types: list[str] = field(default_factory=list)
    priorities: list[int] = field(default_factory=list)
    assignee: str | None = None
    unassigned: bool = False
    labels: list[str] = field(default_factory=list)
    labels_any: list[str] = field(default_factory=list)
    text: str = ""
    ids: list[str] = field(default_factory=list)
    include_tombstones: bool = False
    include_templates: bool = False
    include_ephemeral: bool = False
    parent_id: str | None = None
    limit: int = 0


@dataclass
class ReadyFilter:
    """Filter for ready-work queries."""
    issue_types: list[str] = field(default_factory=list)
    priorities: list[int] = field(default_factory=list)
    assignee: str | None = None
    unassigned: bool = False
    labels: list[str] = field(default_factory=list)
    labels_any: list[str] = field(default_factory=list)
    include_deferred: bool = False
    limit: int = 0
