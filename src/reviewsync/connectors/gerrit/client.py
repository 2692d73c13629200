"""Gerrit REST API client.

Provides an async httpx-based client for the Gerrit Code Review REST API.
Handles the XSSI guard prefix, optional HTTP basic auth (authenticated
endpoints live under /a/), offset pagination and record translation.

Reference: https://gerrit-review.googlesource.com/Documentation/rest-api-changes.html
"""

import json
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from reviewsync.connectors.base import RemoteClient, parse_timestamp
from reviewsync.errors import RemoteClientError
from reviewsync.models import (
    PATCHSET_LEVEL_PATH,
    STATUS_ABANDONED,
    STATUS_MERGED,
    STATUS_OPEN,
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

logger = logging.getLogger("reviewsync.gerrit.client")

# Gerrit prefixes JSON bodies with this line to defeat XSSI
XSSI_PREFIX = ")]}'"

STATUS_MAP = {
    "NEW": STATUS_OPEN,
    "MERGED": STATUS_MERGED,
    "ABANDONED": STATUS_ABANDONED,
}

DETAIL_OPTIONS = (
    "ALL_REVISIONS",
    "ALL_FILES",
    "ALL_COMMITS",
    "DETAILED_LABELS",
    "DETAILED_ACCOUNTS",
    "MESSAGES",
)


def _account(data: dict[str, Any] | None) -> Account:
    data = data or {}
    return Account(
        name=data.get("name", ""),
        email=data.get("email", ""),
        username=data.get("username", ""),
    )


def _quote(value: str) -> str:
    return quote(value, safe="")


class GerritClient(RemoteClient):
    """Gerrit client scoped to one project.

    Example:
        >>> async with GerritClient("https://go-review.googlesource.com", "go") as client:
        ...     page = await client.query_changes("open", since, start=0, limit=100)
    """

    source = "gerrit"

    def __init__(
        self,
        base_url: str,
        project: str,
        branches: tuple[str, ...] | list[str] = (),
        statuses: tuple[str, ...] | list[str] = ("open", "merged"),
        username: str = "",
        password: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Gerrit client.

        Args:
            base_url: Gerrit base URL (e.g., https://go-review.googlesource.com)
            project: Project to query
            branches: Branch globs kept by matches_branch()
            statuses: Gerrit status operators queried by the fetcher
            username: HTTP username; with password enables /a/ endpoints
            password: HTTP password
            transport: Optional httpx transport (tests)
        """
        self.project = project
        self._statuses = tuple(statuses)
        self._authenticated = bool(username and password)
        super().__init__(
            base_url,
            branches=branches,
            headers={"Accept": "application/json"},
            auth=(username, password) if self._authenticated else None,
            transport=transport,
        )

    @property
    def statuses(self) -> tuple[str, ...]:
        return self._statuses

    # --- HTTP ---

    def _path(self, path: str) -> str:
        if self._authenticated and not path.startswith("/a/"):
            return "/a" + path
        return path

    async def _get_json(
        self, path: str, params: list[tuple[str, Any]] | None = None
    ) -> Any:
        response = await self._raw_request("GET", self._path(path), params=params)
        text = response.text
        if text.startswith(XSSI_PREFIX):
            text = text[len(XSSI_PREFIX):].lstrip("\r\n")
        try:
            return json.loads(text)
        except ValueError as e:
            raise RemoteClientError(f"Invalid JSON from Gerrit for {path}: {e}") from e

    # --- Queries ---

    def build_query(self, status: str, since: datetime) -> str:
        """Build the raw query string; URL encoding happens in httpx.

        ``after:`` takes a date only, so callers filter by exact timestamp.
        """
        parts = [f"repo:{self.project}", f"project:{self.project}"]
        if status:
            parts.append(f"status:{status}")
        parts.append("-is:wip")
        parts.append(f"after:{since.strftime('%Y-%m-%d')}")
        return " ".join(parts)

    async def query_changes(
        self, status: str, since: datetime, start: int, limit: int
    ) -> list[Change]:
        params: list[tuple[str, Any]] = [("q", self.build_query(status, since)), ("n", limit)]
        if start > 0:
            params.append(("S", start))
        data = await self._get_json("/changes/", params=params)
        logger.debug(
            "gerrit_query_page",
            extra={"status": status, "start": start, "fetched": len(data)},
        )
        return [self.parse_change(item) for item in data]

    async def get_change(self, remote_id: str) -> Change:
        data = await self._get_json(f"/changes/{_quote(remote_id)}")
        return self.parse_change(data)

    async def get_change_detail(self, remote_id: str) -> ChangeDetail:
        params = [("o", option) for option in DETAIL_OPTIONS]
        data = await self._get_json(f"/changes/{_quote(remote_id)}", params=params)
        return ChangeDetail(
            change=self.parse_change(data),
            revisions=self.parse_revisions(data.get("revisions") or {}),
            labels=self.parse_labels(data.get("labels") or {}),
            messages=[self.parse_message(m) for m in data.get("messages") or []],
        )

    async def get_file_diff(
        self, change: Change, revision: Revision, info: FileInfo
    ) -> FileDiff:
        path = (
            f"/changes/{_quote(change.remote_id)}/revisions/{_quote(revision.revision_id)}"
            f"/files/{_quote(info.path)}/diff"
        )
        data = await self._get_json(path)
        return self.parse_diff(data)

    async def list_comments(self, change: Change) -> list[Comment]:
        data = await self._get_json(f"/changes/{_quote(change.remote_id)}/comments")
        comments: list[Comment] = []
        for path, items in (data or {}).items():
            for item in items:
                comments.append(self.parse_comment(path, item))
        return comments

    # --- Translation ---

    def parse_change(self, data: dict[str, Any]) -> Change:
        number = data["_number"]
        project = data.get("project", self.project)
        return Change(
            remote_id=f"{project}~{number}",
            number=number,
            project=project,
            branch=data.get("branch", ""),
            subject=data.get("subject", ""),
            status=STATUS_MAP.get(data.get("status", ""), data.get("status", "").lower()),
            created=parse_timestamp(data.get("created")),
            updated=parse_timestamp(data.get("updated")),
            submitted=parse_timestamp(data.get("submitted")),
            owner=_account(data.get("owner")),
            change_key=data.get("change_id", ""),
            current_revision=data.get("current_revision", ""),
            insertions=data.get("insertions", 0),
            deletions=data.get("deletions", 0),
            url=f"{self.base_url}/c/{project}/+/{number}",
        )

    @staticmethod
    def parse_revisions(revisions: dict[str, Any]) -> list[Revision]:
        parsed = []
        for sha, rev in revisions.items():
            commit = rev.get("commit") or {}
            files = {
                path: FileInfo(
                    path=path,
                    status=info.get("status", "M"),
                    old_path=info.get("old_path", ""),
                    lines_inserted=info.get("lines_inserted", 0),
                    lines_deleted=info.get("lines_deleted", 0),
                    size_delta=info.get("size_delta", 0),
                    size=info.get("size", 0),
                    binary=info.get("binary", False),
                )
                for path, info in (rev.get("files") or {}).items()
            }
            parsed.append(
                Revision(
                    revision_id=sha,
                    number=rev.get("_number", 0),
                    created=parse_timestamp(rev.get("created")),
                    uploader=_account(rev.get("uploader")),
                    author=_account(commit.get("author")),
                    subject=commit.get("subject", ""),
                    commit_message=commit.get("message", ""),
                    kind=rev.get("kind", ""),
                    files=files,
                )
            )
        return sorted(parsed, key=lambda r: r.number)

    @staticmethod
    def parse_labels(labels: dict[str, Any]) -> list[LabelVote]:
        votes = []
        for name, info in labels.items():
            for approval in info.get("all") or []:
                value = approval.get("value") or 0
                if value == 0:
                    continue
                votes.append(
                    LabelVote(
                        label=name,
                        value=value,
                        account=_account(approval),
                        granted_on=parse_timestamp(approval.get("date")),
                    )
                )
        return votes

    @staticmethod
    def parse_message(data: dict[str, Any]) -> Message:
        return Message(
            message_id=data.get("id", ""),
            message=data.get("message", ""),
            author=_account(data.get("author")),
            date=parse_timestamp(data.get("date")),
            revision_number=data.get("_revision_number"),
        )

    @staticmethod
    def parse_comment(path: str, data: dict[str, Any]) -> Comment:
        updated = parse_timestamp(data.get("updated"))
        return Comment(
            comment_id=data["id"],
            message=data.get("message", ""),
            author=_account(data.get("author")),
            created=updated,
            updated=updated,
            file_path=None if path == PATCHSET_LEVEL_PATH else path,
            line=data.get("line"),
            patch_set=data.get("patch_set"),
            in_reply_to=data.get("in_reply_to"),
            unresolved=data.get("unresolved", False),
        )

    @staticmethod
    def parse_diff(data: dict[str, Any]) -> FileDiff:
        chunks = [
            DiffChunk(
                common=list(part.get("ab") or []),
                removed=list(part.get("a") or []),
                added=list(part.get("b") or []),
            )
            for part in data.get("content") or []
        ]
        return FileDiff(
            header=list(data.get("diff_header") or []),
            chunks=chunks,
            binary=data.get("binary", False),
            change_type=data.get("change_type", ""),
        )
