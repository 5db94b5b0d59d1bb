"""Storage interface (abstract base) for trackline."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator

from trackline.models import (
    Comment, Dependency, Event, Issue, IssueFilter, IssueUpdate, ReadyFilter, SortPolicy,
)


class Storage(ABC):
    """Abstract base class defining all storage operations."""

    @abstractmethod
    def path(self) -> str:
        """Return the database file path."""

    @abstractmethod
    def close(self) -> None:
        """Close the storage connection."""

    # --- Transactions ---

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager wrapping work in one all-or-nothing transaction."""

    @abstractmethod
    def run_in_transaction(self, fn: Callable[[Storage], Any]) -> Any:
        """Call fn(self) inside a transaction and return its result."""

    # --- Issue CRUD ---

    @abstractmethod
    def create_issue(self, issue: Issue, actor: str) -> Issue:
        """Create a new issue, generating an ID when none is set."""

    @abstractmethod
    def get_issue(self, issue_id: str) -> Issue | None:
        """Get an issue with labels, dependencies and comments. None if missing."""

    @abstractmethod
    def update_issue(self, issue_id: str, update: IssueUpdate, actor: str) -> Issue:
        """Apply a partial update and return the updated issue."""

    @abstractmethod
    def soft_delete(self, issue_id: str, actor: str, reason: str = "") -> Issue:
        """Turn an issue into a tombstone."""

    @abstractmethod
    def hard_delete(self, issue_id: str, actor: str) -> None:
        """Physically remove an issue and edges pointing at it."""

    @abstractmethod
    def id_exists(self, issue_id: str) -> bool:
        """True when a row with this ID exists (tombstones included)."""

    # --- Query ---

    @abstractmethod
    def list_issues(self, filter: IssueFilter, sort_by: str = "created_at",
                    reverse: bool = False) -> list[Issue]:
        """List issues with filters and sorting."""

    @abstractmethod
    def iter_issues_for_export(self) -> Iterator[Issue]:
        """All issues sorted by ID with relations loaded."""

    # --- Dependencies ---

    @abstractmethod
    def add_dependency(self, dep: Dependency, actor: str) -> None:
        """Add a dependency relationship."""

    @abstractmethod
    def remove_dependency(self, issue_id: str, depends_on_id: str, actor: str) -> None:
        """Remove a dependency relationship."""

    @abstractmethod
    def get_dependency_records(self, issue_id: str) -> list[Dependency]:
        """Get the outgoing dependency edges of an issue."""

    @abstractmethod
    def would_create_cycle(self, issue_id: str, depends_on_id: str) -> bool:
        """True if issue_id is reachable from depends_on_id over blocking edges."""

    # --- Labels / comments / events ---

    @abstractmethod
    def add_label(self, issue_id: str, label: str, actor: str) -> bool:
        """Add a label. Returns False if it was already present."""

    @abstractmethod
    def remove_label(self, issue_id: str, label: str, actor: str) -> bool:
        """Remove a label. Returns False if it was not present."""

    @abstractmethod
    def get_labels(self, issue_id: str) -> list[str]:
        """Get labels for an issue."""

    @abstractmethod
    def add_comment(self, issue_id: str, author: str, text: str) -> Comment:
        """Append a comment."""

    @abstractmethod
    def get_comments(self, issue_id: str) -> list[Comment]:
        """Get comments in creation order."""

    @abstractmethod
    def get_events(self, issue_id: str) -> list[Event]:
        """Get the audit trail for an issue."""

    # --- Blocked cache / ready work ---

    @abstractmethod
    def rebuild_blocked_cache(self, full: bool = True) -> int:
        """Recompute the blocked cache. Returns the number of blocked issues."""

    @abstractmethod
    def is_blocked(self, issue_id: str) -> bool:
        """True if the issue is blocked directly or through an ancestor."""

    @abstractmethod
    def get_blocked_issues(self) -> list[tuple[Issue, list[str]]]:
        """Get blocked issues with their blocker IDs."""

    @abstractmethod
    def get_ready_issues(self, filter: ReadyFilter | None = None,
                         sort: SortPolicy = SortPolicy.HYBRID) -> list[Issue]:
        """Get issues that are ready to work on."""

    # --- Dirty tracking / export hashes ---

    @abstractmethod
    def get_dirty_issue_ids(self) -> list[str]:
        """IDs mutated since their last export."""

    @abstractmethod
    def clear_dirty(self, issue_ids: list[str]) -> None:
        """Remove issues from the dirty ledger."""

    @abstractmethod
    def set_export_hashes(self, hashes: list[tuple[str, str]]) -> None:
        """Record (issue_id, content_hash) pairs written by an export."""

    @abstractmethod
    def clear_all_export_hashes(self) -> None:
        """Forget every recorded export hash."""

    # --- Config / metadata ---

    @abstractmethod
    def get_config(self, key: str) -> str | None:
        """Get a project config value."""

    @abstractmethod
    def set_config(self, key: str, value: str) -> None:
        """Set a project config value."""

    @abstractmethod
    def get_metadata(self, key: str) -> str | None:
        """Get an internal metadata value."""

    @abstractmethod
    def set_metadata(self, key: str, value: str) -> None:
        """Set an internal metadata value."""
