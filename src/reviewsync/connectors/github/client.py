"""GitHub REST API client for pull requests.

Provides an async httpx-based client for GitHub REST API v3 with token auth.
Pull requests map onto the Change model with a single revision (the head
commit). Requests are paced by a token bucket and a proactive quota check
that sleeps until X-RateLimit-Reset when the remaining budget runs low.

Reference: https://docs.github.com/en/rest/pulls
Rate limits: https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api
"""

import asyncio
import logging
import re
import time
from datetime import datetime
from typing import Any

import httpx

from reviewsync.connectors.base import RemoteClient, parse_timestamp
from reviewsync.connectors.rate_limiter import AsyncTokenBucket
from reviewsync.models import (
    STATUS_CLOSED,
    STATUS_MERGED,
    STATUS_OPEN,
    Account,
    Change,
    ChangeDetail,
    Comment,
    FileDiff,
    FileInfo,
    Message,
    Revision,
)

logger = logging.getLogger("reviewsync.github.client")

FILE_STATUS_MAP = {
    "added": "A",
    "removed": "D",
    "modified": "M",
    "renamed": "R",
    "copied": "C",
    "changed": "M",
    "unchanged": "M",
}


def _account(user: dict[str, Any] | None) -> Account:
    user = user or {}
    return Account(name=user.get("login", ""), username=user.get("login", ""))


class GitHubClient(RemoteClient):
    """GitHub client scoped to one repository.

    Attributes:
        repo: Target repository in owner/repo format
        _rate_limit_remaining: Tracked from X-RateLimit-Remaining header
        _rate_limit_reset: Tracked from X-RateLimit-Reset header (epoch seconds)

    Example:
        >>> async with GitHubClient("ghp_token", "owner/repo") as client:
        ...     page = await client.query_changes("all", since, start=0, limit=100)
    """

    source = "github"

    BASE_URL = "https://api.github.com"
    DEFAULT_PER_PAGE = 100
    MAX_PAGES = 100

    def __init__(
        self,
        token: str,
        repo: str,
        base_url: str | None = None,
        branches: tuple[str, ...] | list[str] = (),
        requests_per_hour: int = 4500,
        burst_size: int = 10,
        min_remaining: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
        limiter: AsyncTokenBucket | None = None,
    ) -> None:
        """Initialize GitHub client with token authentication.

        Args:
            token: GitHub token
            repo: Target repository in owner/repo format
            base_url: GitHub API base URL (default: https://api.github.com)
            branches: Base-branch globs kept by matches_branch()
            requests_per_hour: Client-side request budget
            burst_size: Token bucket burst size
            min_remaining: Sleep until reset when fewer requests remain
            transport: Optional httpx transport (tests)
            limiter: Optional pre-built token bucket (tests)
        """
        self.repo = repo
        self.min_remaining = min_remaining
        self._limiter = limiter or AsyncTokenBucket(requests_per_hour, burst_size)
        self._rate_limit_remaining: int | None = None
        self._rate_limit_reset: float | None = None
        super().__init__(
            base_url or self.BASE_URL,
            branches=branches,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "reviewsync/1.0",
            },
            transport=transport,
        )

    @property
    def statuses(self) -> tuple[str, ...]:
        return ("all",)

    @property
    def sorted_by_update_desc(self) -> bool:
        return True

    # --- Rate Limiting ---

    async def _before_request(self) -> None:
        await self._limiter.acquire()
        if (
            self._rate_limit_remaining is not None
            and self._rate_limit_remaining < self.min_remaining
            and self._rate_limit_reset
        ):
            wait_time = max(0.0, self._rate_limit_reset - time.time())
            if wait_time > 0:
                logger.warning(
                    "Rate limit low (%d remaining). Waiting %.1fs for reset",
                    self._rate_limit_remaining,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
            self._rate_limit_remaining = None

    def _after_response(self, response: httpx.Response) -> None:
        """Update rate limit tracking from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                self._rate_limit_remaining = int(remaining)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Remaining header: %r", remaining)

        reset = response.headers.get("X-RateLimit-Reset")
        if reset is not None:
            try:
                self._rate_limit_reset = float(reset)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Reset header: %r", reset)

    def _rate_limit_wait(self, response: httpx.Response) -> float | None:
        if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            reset = float(response.headers.get("X-RateLimit-Reset", "0"))
            return max(1.0, reset - time.time())
        return super()._rate_limit_wait(response)

    def get_rate_limit_status(self) -> dict[str, Any]:
        return {
            "primary_remaining": self._rate_limit_remaining,
            "primary_reset": self._rate_limit_reset,
            "bucket": self._limiter.get_status(),
        }

    # --- Pagination ---

    async def _paginate(
        self,
        path: str,
        params: dict[str, str] | None = None,
        max_pages: int = MAX_PAGES,
    ) -> list[dict[str, Any]]:
        """Fetch all pages of a paginated endpoint using Link headers."""
        all_items: list[dict[str, Any]] = []
        current_params: dict[str, str] | None = dict(params or {})
        current_params["per_page"] = str(self.DEFAULT_PER_PAGE)
        current_path = path

        for _ in range(max_pages):
            response = await self._raw_request("GET", current_path, params=current_params)
            data = response.json()
            if isinstance(data, list):
                all_items.extend(data)

            next_url = self._parse_next_link(response.headers.get("Link", ""))
            if not next_url:
                break
            current_path = next_url[len(self.base_url):]
            current_params = None  # Parameters are embedded in the Link URL

        return all_items

    def _parse_next_link(self, link_header: str) -> str | None:
        """Parse a Link header and return the 'next' URL.

        Format: <https://api.github.com/...?page=2>; rel="next", <...>; rel="last"
        URLs outside base_url are rejected.
        """
        if not link_header:
            return None
        for part in link_header.split(","):
            match = re.match(r'\s*<([^>]+)>;\s*rel="next"', part.strip())
            if match:
                url = match.group(1)
                if not url.startswith(self.base_url + "/"):
                    logger.warning(
                        "Rejecting Link header URL not matching base_url: %.100s", url
                    )
                    return None
                return url
        return None

    # --- Queries ---

    async def query_changes(
        self, status: str, since: datetime, start: int, limit: int
    ) -> list[Change]:
        # The pulls endpoint has no "since" filter; the fetcher filters locally
        # and stops early because results are sorted by update time.
        params = {
            "state": status,
            "sort": "updated",
            "direction": "desc",
            "per_page": str(limit),
            "page": str(start // limit + 1),
        }
        response = await self._raw_request("GET", f"/repos/{self.repo}/pulls", params=params)
        return [self.parse_pull(item) for item in response.json()]

    async def get_change(self, remote_id: str) -> Change:
        response = await self._raw_request("GET", f"/repos/{self.repo}/pulls/{remote_id}")
        return self.parse_pull(response.json())

    async def get_change_detail(self, remote_id: str) -> ChangeDetail:
        response = await self._raw_request("GET", f"/repos/{self.repo}/pulls/{remote_id}")
        pull = response.json()
        change = self.parse_pull(pull)
        files = await self._paginate(f"/repos/{self.repo}/pulls/{remote_id}/files")
        reviews = await self._paginate(f"/repos/{self.repo}/pulls/{remote_id}/reviews")

        head = pull.get("head") or {}
        revision = Revision(
            revision_id=head.get("sha", ""),
            number=1,
            created=change.updated,
            uploader=change.owner,
            author=change.owner,
            subject=change.subject,
            commit_message=change.message,
            files={f["filename"]: self.parse_file(f) for f in files},
        )
        messages = [
            Message(
                message_id=str(review["id"]),
                message=review.get("body") or review.get("state", ""),
                author=_account(review.get("user")),
                date=parse_timestamp(review.get("submitted_at")),
                revision_number=1,
            )
            for review in reviews
        ]
        return ChangeDetail(change=change, revisions=[revision], messages=messages)

    async def get_file_diff(
        self, change: Change, revision: Revision, info: FileInfo
    ) -> FileDiff:
        # Patches ship inline with the file listing
        if info.patch is None:
            return FileDiff(binary=True)
        old_path = info.old_path or info.path
        header = [f"diff --git a/{old_path} b/{info.path}", f"--- a/{old_path}", f"+++ b/{info.path}"]
        raw = "\n".join(header) + "\n" + info.patch
        if not raw.endswith("\n"):
            raw += "\n"
        return FileDiff(header=header, raw=raw)

    async def list_comments(self, change: Change) -> list[Comment]:
        issue_comments = await self._paginate(
            f"/repos/{self.repo}/issues/{change.remote_id}/comments"
        )
        review_comments = await self._paginate(
            f"/repos/{self.repo}/pulls/{change.remote_id}/comments"
        )
        comments = [self.parse_comment(c, inline=False) for c in issue_comments]
        comments.extend(self.parse_comment(c, inline=True) for c in review_comments)
        return comments

    # --- Translation ---

    def parse_pull(self, data: dict[str, Any]) -> Change:
        if data.get("state") == "open":
            status = STATUS_OPEN
        elif data.get("merged_at"):
            status = STATUS_MERGED
        else:
            status = STATUS_CLOSED
        head = data.get("head") or {}
        base = data.get("base") or {}
        return Change(
            remote_id=str(data["number"]),
            number=data["number"],
            project=self.repo,
            branch=base.get("ref", ""),
            subject=data.get("title", ""),
            message=data.get("body") or "",
            status=status,
            created=parse_timestamp(data.get("created_at")),
            updated=parse_timestamp(data.get("updated_at")),
            submitted=parse_timestamp(data.get("merged_at")),
            owner=_account(data.get("user")),
            change_key=str(data.get("id", "")),
            current_revision=head.get("sha", ""),
            insertions=data.get("additions", 0),
            deletions=data.get("deletions", 0),
            url=data.get("html_url", ""),
        )

    @staticmethod
    def parse_file(data: dict[str, Any]) -> FileInfo:
        patch = data.get("patch")
        return FileInfo(
            path=data["filename"],
            status=FILE_STATUS_MAP.get(data.get("status", ""), "M"),
            old_path=data.get("previous_filename", ""),
            lines_inserted=data.get("additions", 0),
            lines_deleted=data.get("deletions", 0),
            # GitHub omits the patch for binary files and oversized diffs
            binary=patch is None,
            patch=patch,
        )

    @staticmethod
    def parse_comment(data: dict[str, Any], inline: bool) -> Comment:
        reply_to = data.get("in_reply_to_id")
        return Comment(
            comment_id=f"{'review' if inline else 'issue'}-{data['id']}",
            message=data.get("body", ""),
            author=_account(data.get("user")),
            created=parse_timestamp(data.get("created_at")),
            updated=parse_timestamp(data.get("updated_at")),
            file_path=data.get("path") if inline else None,
            line=data.get("line") if inline else None,
            in_reply_to=f"review-{reply_to}" if reply_to else None,
        )
