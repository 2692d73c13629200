"""Shared pytest fixtures for reviewsync tests.

Fixture Organization:
    - Storage fixtures: SQLite store in a temporary directory
    - Clock fixtures: Controllable wall clock and monotonic clock
    - Remote fixtures: In-memory RemoteClient with call recording
    - Sample data fixtures: Change/Revision factories
"""

from collections import defaultdict
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest

from reviewsync.config import reset_config
from reviewsync.connectors.base import RemoteClient
from reviewsync.errors import RemoteClientError
from reviewsync.models import (
    Account,
    Change,
    ChangeDetail,
    Comment,
    DiffChunk,
    FileDiff,
    FileInfo,
    LabelVote,
    Message,
    Revision,
)
from reviewsync.storage import ChangeStore

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Clocks
# =============================================================================


class FakeClock:
    """Wall clock (aware UTC) and monotonic clock moved by hand."""

    def __init__(self, start: datetime = T0):
        self.now = start
        self.mono = 1000.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, **kwargs) -> None:
        delta = timedelta(**kwargs)
        self.now += delta
        self.mono += delta.total_seconds()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Storage
# =============================================================================


@pytest.fixture
def store(tmp_path) -> Generator[ChangeStore, None, None]:
    """ChangeStore backed by a temporary SQLite file."""
    db = ChangeStore(tmp_path / "reviewsync-test.db")
    yield db
    db.close()


@pytest.fixture(autouse=True)
def _reset_config():
    reset_config()
    yield
    reset_config()


# =============================================================================
# Remote
# =============================================================================


class FakeRemoteClient(RemoteClient):
    """In-memory review server.

    ``changes`` holds the current remote state keyed by number. Every call is
    appended to ``calls`` as (method, argument) so tests can assert which
    sub-resources were fetched.
    """

    source = "gerrit"

    def __init__(self, statuses=("open", "merged"), branches=()):
        super().__init__("https://review.example.com", branches=branches)
        self._statuses = tuple(statuses)
        self.changes: dict[int, Change] = {}
        self.revisions: dict[int, list[Revision]] = {}
        self.messages: dict[int, list[Message]] = {}
        self.labels: dict[int, list[LabelVote]] = {}
        self.comments: dict[int, list[Comment]] = {}
        self.diffs: dict[tuple[int, str], FileDiff] = {}
        self.calls: list[tuple[str, object]] = []
        self.fail_query: Exception | None = None
        self.fail_query_after_pages: int | None = None
        self.fail_detail: set[int] = set()
        self.fail_comments: set[int] = set()
        self._pages_served = 0

    @property
    def statuses(self) -> tuple[str, ...]:
        return self._statuses

    def calls_of(self, method: str) -> list:
        return [arg for name, arg in self.calls if name == method]

    def _by_remote_id(self, remote_id: str) -> Change:
        for change in self.changes.values():
            if change.remote_id == remote_id:
                return change
        raise RemoteClientError(f"Not found: {remote_id}", 404)

    async def query_changes(self, status, since, start, limit):
        self.calls.append(("query_changes", (status, start, limit)))
        if self.fail_query is not None:
            if self.fail_query_after_pages is None or (
                self._pages_served >= self.fail_query_after_pages
            ):
                raise self.fail_query
        self._pages_served += 1
        matching = sorted(
            (c for c in self.changes.values() if status == "all" or c.status == status),
            key=lambda c: c.number,
        )
        return matching[start:start + limit]

    async def get_change(self, remote_id):
        self.calls.append(("get_change", remote_id))
        return self._by_remote_id(remote_id)

    async def get_change_detail(self, remote_id):
        self.calls.append(("get_change_detail", remote_id))
        change = self._by_remote_id(remote_id)
        if change.number in self.fail_detail:
            raise RemoteClientError("detail unavailable", 503)
        return ChangeDetail(
            change=change,
            revisions=list(self.revisions.get(change.number, [])),
            labels=list(self.labels.get(change.number, [])),
            messages=list(self.messages.get(change.number, [])),
        )

    async def get_file_diff(self, change, revision, info):
        self.calls.append(("get_file_diff", (change.number, revision.number, info.path)))
        return self.diffs.get(
            (change.number, info.path),
            FileDiff(header=[f"diff --git a/{info.path} b/{info.path}"],
                     chunks=[DiffChunk(common=["x"], added=["y"])]),
        )

    async def list_comments(self, change):
        self.calls.append(("list_comments", change.number))
        if change.number in self.fail_comments:
            raise RemoteClientError("comments unavailable", 500)
        return list(self.comments.get(change.number, []))


@pytest.fixture
def remote() -> FakeRemoteClient:
    return FakeRemoteClient()


# =============================================================================
# Sample data
# =============================================================================


@pytest.fixture
def make_change():
    """Factory for Change records of project "go"."""

    def _make(number, updated=T0, status="open", branch="master", **kwargs):
        return Change(
            remote_id=f"go~{number}",
            number=number,
            project="go",
            branch=branch,
            subject=kwargs.pop("subject", f"change {number}"),
            status=status,
            updated=updated,
            created=kwargs.pop("created", updated - timedelta(days=1)),
            owner=kwargs.pop("owner", Account(name="Gopher", email="gopher@example.com")),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_revision():
    """Factory for Revision records with the given file paths."""

    def _make(number, paths=("src/a.go",), **file_kwargs):
        return Revision(
            revision_id=f"sha{number}",
            number=number,
            subject=f"patchset {number}",
            files={
                path: FileInfo(path=path, lines_inserted=1, **file_kwargs)
                for path in paths
            },
        )

    return _make


@pytest.fixture
def comment_factory():
    counter = defaultdict(int)

    def _make(change_number, message="LGTM", updated=T0, **kwargs):
        counter[change_number] += 1
        return Comment(
            comment_id=kwargs.pop("comment_id", f"c{change_number}-{counter[change_number]}"),
            message=message,
            created=updated,
            updated=updated,
            **kwargs,
        )

    return _make
