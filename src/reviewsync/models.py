"""Typed records exchanged between the connectors, the store and the engine.

Connectors translate wire JSON into these dataclasses so that the sync
engine never touches raw dicts. All timestamps are timezone-aware UTC.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

# Normalised change statuses
STATUS_OPEN = "open"
STATUS_MERGED = "merged"
STATUS_CLOSED = "closed"
STATUS_ABANDONED = "abandoned"

# Gerrit pseudo-files that are never diffed
COMMIT_MSG_PATH = "/COMMIT_MSG"
MERGE_LIST_PATH = "/MERGE_LIST"
PATCHSET_LEVEL_PATH = "/PATCHSET_LEVEL"
RESERVED_PATHS = frozenset({COMMIT_MSG_PATH, MERGE_LIST_PATH, PATCHSET_LEVEL_PATH})

# File statuses
FILE_ADDED = "A"
FILE_DELETED = "D"
FILE_MODIFIED = "M"
FILE_RENAMED = "R"
FILE_COPIED = "C"
FILE_REWRITTEN = "W"


def utcnow() -> datetime:
    """Current wall-clock time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass
class Account:
    name: str = ""
    email: str = ""
    username: str = ""

    @property
    def display(self) -> str:
        return self.name or self.username or self.email


@dataclass
class Change:
    """A reviewable unit of work (Gerrit change or GitHub pull request).

    Attributes:
        remote_id: Identifier used in REST paths (Gerrit "project~branch~Id",
            GitHub PR number as string)
        number: Human-facing number, unique within a repository
        status: Normalised status (open, merged, closed, abandoned)
        updated: Remote last-update timestamp, the incremental-sync gate
    """

    remote_id: str
    number: int
    project: str
    branch: str
    subject: str
    status: str
    updated: datetime
    created: datetime | None = None
    submitted: datetime | None = None
    owner: Account = field(default_factory=Account)
    change_key: str = ""
    message: str = ""
    current_revision: str = ""
    insertions: int = 0
    deletions: int = 0
    url: str = ""


@dataclass
class FileInfo:
    """Per-file summary within a revision."""

    path: str
    status: str = FILE_MODIFIED
    old_path: str = ""
    lines_inserted: int = 0
    lines_deleted: int = 0
    size_delta: int = 0
    size: int = 0
    binary: bool = False
    patch: str | None = None  # inline unified patch when the source ships one


@dataclass
class Revision:
    """One patchset of a change. Numbers increase monotonically per change."""

    revision_id: str
    number: int
    created: datetime | None = None
    uploader: Account = field(default_factory=Account)
    author: Account = field(default_factory=Account)
    subject: str = ""
    commit_message: str = ""
    kind: str = ""
    files: dict[str, FileInfo] = field(default_factory=dict)


@dataclass
class DiffChunk:
    """One run of a structured diff: common, removed and added lines."""

    common: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)


@dataclass
class FileDiff:
    """Diff of a single file in a revision.

    Either structured (header + chunks, Gerrit) or already-unified text in
    ``raw`` (GitHub patches).
    """

    header: list[str] = field(default_factory=list)
    chunks: list[DiffChunk] = field(default_factory=list)
    binary: bool = False
    raw: str | None = None
    change_type: str = ""


@dataclass
class Comment:
    """Review comment. Threads form a forest through ``in_reply_to``."""

    comment_id: str
    message: str
    author: Account = field(default_factory=Account)
    created: datetime | None = None
    updated: datetime | None = None
    file_path: str | None = None  # None for change/patchset-level comments
    line: int | None = None
    patch_set: int | None = None
    in_reply_to: str | None = None
    unresolved: bool = False


@dataclass
class Message:
    """Change-log message (review summaries, votes, bot notes)."""

    message_id: str
    message: str
    author: Account = field(default_factory=Account)
    date: datetime | None = None
    revision_number: int | None = None


@dataclass
class LabelVote:
    """A non-zero vote on a review label."""

    label: str
    value: int
    account: Account = field(default_factory=Account)
    granted_on: datetime | None = None


@dataclass
class ChangeDetail:
    """Change plus its expanded sub-resources from a detail fetch."""

    change: Change
    revisions: list[Revision] = field(default_factory=list)
    labels: list[LabelVote] = field(default_factory=list)
    messages: list[Message] = field(default_factory=list)


@dataclass
class StoredChange:
    """Snapshot of a change row in the local store."""

    id: int
    repository_id: int
    remote_id: str
    number: int
    status: str
    previous_status: str | None
    updated: datetime
    last_synced_at: datetime | None = None


@dataclass
class SyncResult:
    """Result of a sync pass.

    Tracks per-kind counts, errors and timing for metrics and logging.
    """

    mode: str = "incremental"
    changes_seen: int = 0
    changes_created: int = 0
    changes_updated: int = 0
    changes_unchanged: int = 0
    transitions: int = 0
    revisions_synced: int = 0
    files_synced: int = 0
    diffs_stored: int = 0
    diffs_stats_only: int = 0
    comments_synced: int = 0
    messages_synced: int = 0
    labels_synced: int = 0
    analyses_scheduled: int = 0
    errors: int = 0
    since: datetime | None = None
    cursor: datetime | None = None
    duration_seconds: float = 0.0
    error_details: list[str] = field(default_factory=list)

    def record_error(self, detail: str) -> None:
        self.errors += 1
        self.error_details.append(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for metrics and logging."""
        return {
            "mode": self.mode,
            "changes_seen": self.changes_seen,
            "changes_created": self.changes_created,
            "changes_updated": self.changes_updated,
            "changes_unchanged": self.changes_unchanged,
            "transitions": self.transitions,
            "revisions_synced": self.revisions_synced,
            "files_synced": self.files_synced,
            "diffs_stored": self.diffs_stored,
            "diffs_stats_only": self.diffs_stats_only,
            "comments_synced": self.comments_synced,
            "messages_synced": self.messages_synced,
            "labels_synced": self.labels_synced,
            "analyses_scheduled": self.analyses_scheduled,
            "errors": self.errors,
            "since": self.since.isoformat() if self.since else None,
            "cursor": self.cursor.isoformat() if self.cursor else None,
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class DashboardUpdateResult:
    """Whether recently updated remote changes are missing locally."""

    has_missing_recent_changes: bool
    missing_count: int
    last_checked_at: datetime
    stale: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_missing_recent_changes": self.has_missing_recent_changes,
            "missing_count": self.missing_count,
            "last_checked_at": self.last_checked_at.isoformat(),
            "stale": self.stale,
            "error": self.error,
        }


@dataclass
class ChangeUpdateResult:
    """Whether one change was updated remotely since it was last synced."""

    updated_since_last_sync: bool
    last_checked_at: datetime
    last_synced_at: datetime | None = None
    remote_updated_at: datetime | None = None
    stale: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated_since_last_sync": self.updated_since_last_sync,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "remote_updated_at": (
                self.remote_updated_at.isoformat() if self.remote_updated_at else None
            ),
            "last_checked_at": self.last_checked_at.isoformat(),
            "stale": self.stale,
            "error": self.error,
        }
