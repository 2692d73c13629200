"""SQLite persistence for mirrored changes and their sub-resources.

One connection shared by the event loop and worker threads; every statement
runs under an RLock. Child tables cascade on delete so clearing a change
removes its revisions, files, diffs, comments, messages and labels.
"""

import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from reviewsync.errors import StorageError
from reviewsync.models import (
    Change,
    Comment,
    FileInfo,
    LabelVote,
    Message,
    Revision,
    StoredChange,
)

logger = logging.getLogger("reviewsync.storage")

SCHEMA = """
CREATE TABLE IF NOT EXISTS repositories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    source TEXT NOT NULL,
    last_synced_at TEXT,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS changes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    repository_id INTEGER NOT NULL,
    remote_id TEXT NOT NULL,
    number INTEGER NOT NULL,
    change_key TEXT,
    project TEXT,
    branch TEXT,
    subject TEXT,
    message TEXT,
    status TEXT NOT NULL,
    previous_status TEXT,
    owner_name TEXT,
    owner_email TEXT,
    created TEXT,
    updated TEXT NOT NULL,
    submitted TEXT,
    current_revision TEXT,
    insertions INTEGER NOT NULL DEFAULT 0,
    deletions INTEGER NOT NULL DEFAULT 0,
    url TEXT,
    last_synced_at TEXT,
    UNIQUE(repository_id, number),
    FOREIGN KEY(repository_id) REFERENCES repositories(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS revisions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL,
    revision_id TEXT NOT NULL,
    patchset_num INTEGER NOT NULL,
    uploader_name TEXT,
    author_name TEXT,
    subject TEXT,
    commit_message TEXT,
    kind TEXT,
    created TEXT,
    UNIQUE(change_db_id, patchset_num),
    FOREIGN KEY(change_db_id) REFERENCES changes(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    revision_db_id INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    old_path TEXT,
    status TEXT,
    lines_inserted INTEGER NOT NULL DEFAULT 0,
    lines_deleted INTEGER NOT NULL DEFAULT 0,
    size_delta INTEGER NOT NULL DEFAULT 0,
    size INTEGER NOT NULL DEFAULT 0,
    is_binary INTEGER NOT NULL DEFAULT 0,
    UNIQUE(revision_db_id, file_path),
    FOREIGN KEY(revision_db_id) REFERENCES revisions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS diffs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    file_db_id INTEGER NOT NULL UNIQUE,
    diff_content TEXT,
    diff_size INTEGER NOT NULL DEFAULT 0,
    is_binary INTEGER NOT NULL DEFAULT 0,
    stats_only INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY(file_db_id) REFERENCES files(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL,
    comment_id TEXT NOT NULL,
    file_path TEXT,
    line INTEGER,
    patch_set INTEGER,
    author_name TEXT,
    message TEXT,
    created TEXT,
    updated TEXT,
    in_reply_to TEXT,
    unresolved INTEGER NOT NULL DEFAULT 0,
    UNIQUE(change_db_id, comment_id),
    FOREIGN KEY(change_db_id) REFERENCES changes(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL,
    message_id TEXT NOT NULL,
    author_name TEXT,
    message TEXT,
    date TEXT,
    revision_number INTEGER,
    UNIQUE(change_db_id, message_id),
    FOREIGN KEY(change_db_id) REFERENCES changes(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS labels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    change_db_id INTEGER NOT NULL,
    label TEXT NOT NULL,
    value INTEGER NOT NULL,
    account_name TEXT,
    account_email TEXT,
    granted_on TEXT,
    FOREIGN KEY(change_db_id) REFERENCES changes(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_changes_repo_updated ON changes(repository_id, updated);
CREATE INDEX IF NOT EXISTS idx_changes_status ON changes(status);
CREATE INDEX IF NOT EXISTS idx_comments_change ON comments(change_db_id);
CREATE INDEX IF NOT EXISTS idx_labels_change ON labels(change_db_id);
"""

TABLES = (
    "labels",
    "messages",
    "comments",
    "diffs",
    "files",
    "revisions",
    "changes",
    "repositories",
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ChangeStore:
    """SQLite wrapper for repositories, changes and their sub-resources."""

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cur = self.conn.execute(sql, params)
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StorageError(str(e)) from e
            return cur

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # -- Repositories ---------------------------------------------------

    def get_or_create_repository(self, name: str, source: str) -> int:
        with self._lock:
            row = self._fetchone("SELECT id FROM repositories WHERE name = ?", (name,))
            if row:
                return row["id"]
            cur = self._execute(
                "INSERT INTO repositories (name, source) VALUES (?, ?)", (name, source)
            )
            logger.info("repository_created", extra={"repository": name, "source": source})
            return cur.lastrowid

    def get_repository_id(self, name: str) -> int | None:
        row = self._fetchone("SELECT id FROM repositories WHERE name = ?", (name,))
        return row["id"] if row else None

    def get_cursor(self, repository_id: int) -> datetime | None:
        row = self._fetchone(
            "SELECT last_synced_at FROM repositories WHERE id = ?", (repository_id,)
        )
        return _parse_ts(row["last_synced_at"]) if row else None

    def set_cursor(self, repository_id: int, value: datetime) -> None:
        self._execute(
            "UPDATE repositories SET last_synced_at = ? WHERE id = ?",
            (_ts(value), repository_id),
        )

    # -- Changes --------------------------------------------------------

    @staticmethod
    def _row_to_stored(row: sqlite3.Row) -> StoredChange:
        return StoredChange(
            id=row["id"],
            repository_id=row["repository_id"],
            remote_id=row["remote_id"],
            number=row["number"],
            status=row["status"],
            previous_status=row["previous_status"],
            updated=_parse_ts(row["updated"]),
            last_synced_at=_parse_ts(row["last_synced_at"]),
        )

    def get_change(self, change_id: int) -> StoredChange | None:
        row = self._fetchone("SELECT * FROM changes WHERE id = ?", (change_id,))
        return self._row_to_stored(row) if row else None

    def get_change_by_number(self, repository_id: int, number: int) -> StoredChange | None:
        row = self._fetchone(
            "SELECT * FROM changes WHERE repository_id = ? AND number = ?",
            (repository_id, number),
        )
        return self._row_to_stored(row) if row else None

    def insert_change(self, repository_id: int, change: Change) -> int:
        cur = self._execute(
            """
            INSERT INTO changes (
                repository_id, remote_id, number, change_key, project, branch,
                subject, message, status, owner_name, owner_email, created,
                updated, submitted, current_revision, insertions, deletions, url
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                repository_id,
                change.remote_id,
                change.number,
                change.change_key,
                change.project,
                change.branch,
                change.subject,
                change.message,
                change.status,
                change.owner.display,
                change.owner.email,
                _ts(change.created),
                _ts(change.updated),
                _ts(change.submitted),
                change.current_revision,
                change.insertions,
                change.deletions,
                change.url,
            ),
        )
        return cur.lastrowid

    def update_change(self, change_id: int, change: Change) -> None:
        """Update every mirrored field except status and previous_status."""
        self._execute(
            """
            UPDATE changes SET
                remote_id = ?, change_key = ?, project = ?, branch = ?,
                subject = ?, message = ?, owner_name = ?, owner_email = ?,
                created = ?, updated = ?, submitted = ?, current_revision = ?,
                insertions = ?, deletions = ?, url = ?
            WHERE id = ?
            """,
            (
                change.remote_id,
                change.change_key,
                change.project,
                change.branch,
                change.subject,
                change.message,
                change.owner.display,
                change.owner.email,
                _ts(change.created),
                _ts(change.updated),
                _ts(change.submitted),
                change.current_revision,
                change.insertions,
                change.deletions,
                change.url,
                change_id,
            ),
        )

    def get_status(self, change_id: int) -> str | None:
        row = self._fetchone("SELECT status FROM changes WHERE id = ?", (change_id,))
        return row["status"] if row else None

    def apply_transition(self, change_id: int, new_status: str) -> None:
        """Shift the current status into previous_status and write the new one."""
        self._execute(
            "UPDATE changes SET previous_status = status, status = ? WHERE id = ?",
            (new_status, change_id),
        )

    def mark_synced(self, change_id: int, when: datetime | None) -> None:
        self._execute(
            "UPDATE changes SET last_synced_at = ? WHERE id = ?", (_ts(when), change_id)
        )

    def existing_numbers(self, repository_id: int, numbers: Iterable[int]) -> set[int]:
        numbers = list(numbers)
        if not numbers:
            return set()
        placeholders = ",".join("?" for _ in numbers)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT number FROM changes WHERE repository_id = ? "
                f"AND number IN ({placeholders})",
                (repository_id, *numbers),
            ).fetchall()
        return {row["number"] for row in rows}

    # -- Sub-resources --------------------------------------------------

    def upsert_revision(self, change_id: int, revision: Revision) -> int:
        self._execute(
            """
            INSERT INTO revisions (
                change_db_id, revision_id, patchset_num, uploader_name,
                author_name, subject, commit_message, kind, created
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(change_db_id, patchset_num) DO UPDATE SET
                revision_id = excluded.revision_id,
                uploader_name = excluded.uploader_name,
                author_name = excluded.author_name,
                subject = excluded.subject,
                commit_message = excluded.commit_message,
                kind = excluded.kind,
                created = excluded.created
            """,
            (
                change_id,
                revision.revision_id,
                revision.number,
                revision.uploader.display,
                revision.author.display,
                revision.subject,
                revision.commit_message,
                revision.kind,
                _ts(revision.created),
            ),
        )
        row = self._fetchone(
            "SELECT id FROM revisions WHERE change_db_id = ? AND patchset_num = ?",
            (change_id, revision.number),
        )
        return row["id"]

    def upsert_file(self, revision_db_id: int, info: FileInfo) -> int:
        self._execute(
            """
            INSERT INTO files (
                revision_db_id, file_path, old_path, status, lines_inserted,
                lines_deleted, size_delta, size, is_binary
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(revision_db_id, file_path) DO UPDATE SET
                old_path = excluded.old_path,
                status = excluded.status,
                lines_inserted = excluded.lines_inserted,
                lines_deleted = excluded.lines_deleted,
                size_delta = excluded.size_delta,
                size = excluded.size,
                is_binary = excluded.is_binary
            """,
            (
                revision_db_id,
                info.path,
                info.old_path,
                info.status,
                info.lines_inserted,
                info.lines_deleted,
                info.size_delta,
                info.size,
                int(info.binary),
            ),
        )
        row = self._fetchone(
            "SELECT id FROM files WHERE revision_db_id = ? AND file_path = ?",
            (revision_db_id, info.path),
        )
        return row["id"]

    def upsert_diff(
        self,
        file_db_id: int,
        content: str,
        size: int,
        stats_only: bool = False,
        is_binary: bool = False,
    ) -> None:
        self._execute(
            """
            INSERT INTO diffs (file_db_id, diff_content, diff_size, is_binary, stats_only)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(file_db_id) DO UPDATE SET
                diff_content = excluded.diff_content,
                diff_size = excluded.diff_size,
                is_binary = excluded.is_binary,
                stats_only = excluded.stats_only
            """,
            (file_db_id, content or None, size, int(is_binary), int(stats_only)),
        )

    def get_diff(self, file_db_id: int) -> dict | None:
        row = self._fetchone("SELECT * FROM diffs WHERE file_db_id = ?", (file_db_id,))
        return dict(row) if row else None

    def upsert_comment(self, change_id: int, comment: Comment) -> None:
        self._execute(
            """
            INSERT INTO comments (
                change_db_id, comment_id, file_path, line, patch_set,
                author_name, message, created, updated, in_reply_to, unresolved
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(change_db_id, comment_id) DO UPDATE SET
                message = excluded.message,
                updated = excluded.updated,
                unresolved = excluded.unresolved
            """,
            (
                change_id,
                comment.comment_id,
                comment.file_path,
                comment.line,
                comment.patch_set,
                comment.author.display,
                comment.message,
                _ts(comment.created),
                _ts(comment.updated),
                comment.in_reply_to,
                int(comment.unresolved),
            ),
        )

    def upsert_message(self, change_id: int, message: Message) -> None:
        self._execute(
            """
            INSERT INTO messages (
                change_db_id, message_id, author_name, message, date, revision_number
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(change_db_id, message_id) DO UPDATE SET
                message = excluded.message
            """,
            (
                change_id,
                message.message_id,
                message.author.display,
                message.message,
                _ts(message.date),
                message.revision_number,
            ),
        )

    def replace_labels(self, change_id: int, votes: Iterable[LabelVote]) -> int:
        """Replace all votes of a change with the given non-zero votes."""
        count = 0
        with self._lock:
            try:
                self.conn.execute("DELETE FROM labels WHERE change_db_id = ?", (change_id,))
                for vote in votes:
                    if vote.value == 0:
                        continue
                    self.conn.execute(
                        """
                        INSERT INTO labels (
                            change_db_id, label, value, account_name,
                            account_email, granted_on
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            change_id,
                            vote.label,
                            vote.value,
                            vote.account.display,
                            vote.account.email,
                            _ts(vote.granted_on),
                        ),
                    )
                    count += 1
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StorageError(str(e)) from e
        return count

    def list_comments(self, change_id: int) -> list[dict]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM comments WHERE change_db_id = ? ORDER BY updated, comment_id",
                (change_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def count(self, table: str, change_id: int | None = None) -> int:
        """Row count of a table, optionally restricted to one change."""
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        if change_id is None or table in ("changes", "repositories"):
            row = self._fetchone(f"SELECT COUNT(*) AS n FROM {table}")
        elif table in ("files", "diffs"):
            join = (
                "files f JOIN revisions r ON f.revision_db_id = r.id"
                if table == "files"
                else "diffs d JOIN files f ON d.file_db_id = f.id "
                "JOIN revisions r ON f.revision_db_id = r.id"
            )
            row = self._fetchone(
                f"SELECT COUNT(*) AS n FROM {join} WHERE r.change_db_id = ?", (change_id,)
            )
        else:
            row = self._fetchone(
                f"SELECT COUNT(*) AS n FROM {table} WHERE change_db_id = ?", (change_id,)
            )
        return row["n"]

    # -- Maintenance ----------------------------------------------------

    def clear_all(self) -> None:
        """Drop every table and recreate the schema."""
        with self._lock:
            try:
                self.conn.execute("PRAGMA foreign_keys = OFF")
                for table in TABLES:
                    self.conn.execute(f"DROP TABLE IF EXISTS {table}")
                self.conn.commit()
                self.conn.execute("PRAGMA foreign_keys = ON")
                self.conn.executescript(SCHEMA)
                self.conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to clear database: {e}") from e
        logger.warning("database_cleared", extra={"db_path": self.db_path})
