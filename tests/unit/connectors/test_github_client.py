"""Unit tests for the GitHub pull request client.

Tests GitHubClient with:
- Authentication headers
- Pull request listing parameters and status mapping
- Detail assembly (single revision, files, reviews)
- Inline patches as diffs
- Issue and review comments
- Link header pagination
- Rate limiting (token bucket, low-remaining wait, 403 exhaustion)
"""

import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from reviewsync.connectors.github import GitHubClient
from reviewsync.errors import RemoteClientError
from reviewsync.models import FileInfo, Revision

PULL = {
    "id": 99001,
    "number": 42,
    "state": "open",
    "title": "Add retry to fetcher",
    "body": "Fixes #41",
    "user": {"login": "octocat"},
    "created_at": "2024-05-30T10:00:00Z",
    "updated_at": "2024-06-01T11:00:00Z",
    "merged_at": None,
    "head": {"sha": "headsha"},
    "base": {"ref": "main"},
    "additions": 10,
    "deletions": 2,
    "html_url": "https://github.com/owner/repo/pull/42",
}


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def limiter():
    bucket = MagicMock()
    bucket.acquire = AsyncMock(return_value=0.0)
    bucket.get_status.return_value = {"tokens_available": 10}
    return bucket


@pytest.fixture
def github_client(limiter):
    """Create GitHubClient with a no-op limiter."""
    return GitHubClient(token="ghp_test_token_123", repo="owner/repo", limiter=limiter)


def _mock_response(
    status_code: int = 200,
    json_data: dict | list | None = None,
    headers: dict | None = None,
    content: bytes = b"{}",
) -> Mock:
    """Create a mock httpx.Response with given attributes."""
    resp = Mock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data if json_data is not None else {}
    resp.content = content
    resp.text = content.decode() if content else ""
    _headers = {
        "X-RateLimit-Remaining": "4999",
        "X-RateLimit-Reset": str(int(time.time()) + 3600),
    }
    if headers:
        _headers.update(headers)
    resp.headers = _headers
    return resp


# =============================================================================
# Configuration
# =============================================================================


class TestClientConfiguration:
    def test_bearer_token_in_headers(self, github_client):
        assert github_client._client.headers["Authorization"] == "Bearer ghp_test_token_123"
        assert github_client._client.headers["X-GitHub-Api-Version"] == "2022-11-28"

    def test_listing_shape(self, github_client):
        assert github_client.statuses == ("all",)
        assert github_client.sorted_by_update_desc is True
        assert github_client.source == "github"

    def test_custom_base_url(self, limiter):
        client = GitHubClient(
            token="t", repo="owner/repo", base_url="https://github.example.com/api/v3/",
            limiter=limiter,
        )
        assert client.base_url == "https://github.example.com/api/v3"


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_query_changes_params(self, github_client):
        mock_request = AsyncMock(return_value=_mock_response(json_data=[PULL]))
        with patch.object(github_client._client, "request", new=mock_request):
            changes = await github_client.query_changes(
                "all", datetime(2024, 5, 1, tzinfo=timezone.utc), 100, 50
            )

        args, kwargs = mock_request.call_args
        assert args == ("GET", "/repos/owner/repo/pulls")
        assert kwargs["params"] == {
            "state": "all",
            "sort": "updated",
            "direction": "desc",
            "per_page": "50",
            "page": "3",
        }
        assert changes[0].remote_id == "42"
        assert changes[0].branch == "main"
        assert changes[0].current_revision == "headsha"

    @pytest.mark.parametrize(
        "state,merged_at,expected",
        [
            ("open", None, "open"),
            ("closed", "2024-06-01T12:00:00Z", "merged"),
            ("closed", None, "closed"),
        ],
    )
    def test_status_mapping(self, github_client, state, merged_at, expected):
        change = github_client.parse_pull({**PULL, "state": state, "merged_at": merged_at})
        assert change.status == expected

    @pytest.mark.asyncio
    async def test_change_detail(self, github_client):
        files = [
            {"filename": "fetcher.py", "status": "modified", "additions": 5,
             "deletions": 1, "patch": "@@ -1 +1 @@\n-a\n+b"},
            {"filename": "logo.png", "status": "added"},
            {"filename": "new.py", "previous_filename": "old.py", "status": "renamed",
             "patch": "@@ -0,0 +1 @@\n+x"},
        ]
        reviews = [
            {"id": 7, "user": {"login": "reviewer"}, "body": "", "state": "APPROVED",
             "submitted_at": "2024-06-01T10:00:00Z"},
        ]
        responses = [
            _mock_response(json_data=PULL),
            _mock_response(json_data=files),
            _mock_response(json_data=reviews),
        ]
        with patch.object(
            github_client._client, "request", new=AsyncMock(side_effect=responses)
        ):
            detail = await github_client.get_change_detail("42")

        assert len(detail.revisions) == 1
        revision = detail.revisions[0]
        assert (revision.number, revision.revision_id) == (1, "headsha")
        assert revision.files["fetcher.py"].status == "M"
        assert revision.files["logo.png"].binary is True
        assert revision.files["new.py"].old_path == "old.py"
        assert detail.messages[0].message == "APPROVED"
        assert detail.messages[0].author.username == "reviewer"
        assert detail.labels == []

    @pytest.mark.asyncio
    async def test_file_diff_uses_inline_patch(self, github_client):
        change = github_client.parse_pull(PULL)
        revision = Revision(revision_id="headsha", number=1)
        info = FileInfo(path="new.py", old_path="old.py", patch="@@ -0,0 +1 @@\n+x")
        mock_request = AsyncMock()
        with patch.object(github_client._client, "request", new=mock_request):
            diff = await github_client.get_file_diff(change, revision, info)
            binary = await github_client.get_file_diff(
                change, revision, FileInfo(path="logo.png", binary=True)
            )

        mock_request.assert_not_called()
        assert diff.raw == (
            "diff --git a/old.py b/new.py\n--- a/old.py\n+++ b/new.py\n@@ -0,0 +1 @@\n+x\n"
        )
        assert binary.binary is True

    @pytest.mark.asyncio
    async def test_list_comments_merges_issue_and_review(self, github_client):
        issue = [{"id": 1, "body": "thanks", "user": {"login": "a"},
                  "created_at": "2024-06-01T10:00:00Z", "updated_at": "2024-06-01T10:00:00Z"}]
        review = [
            {"id": 2, "body": "nit", "user": {"login": "b"}, "path": "x.py", "line": 4,
             "created_at": "2024-06-01T10:01:00Z", "updated_at": "2024-06-01T10:01:00Z"},
            {"id": 3, "body": "done", "user": {"login": "a"}, "path": "x.py", "line": 4,
             "in_reply_to_id": 2,
             "created_at": "2024-06-01T10:02:00Z", "updated_at": "2024-06-01T10:02:00Z"},
        ]
        responses = [_mock_response(json_data=issue), _mock_response(json_data=review)]
        with patch.object(
            github_client._client, "request", new=AsyncMock(side_effect=responses)
        ):
            comments = await github_client.list_comments(github_client.parse_pull(PULL))

        by_id = {c.comment_id: c for c in comments}
        assert set(by_id) == {"issue-1", "review-2", "review-3"}
        assert by_id["issue-1"].file_path is None
        assert by_id["review-2"].file_path == "x.py"
        assert by_id["review-3"].in_reply_to == "review-2"


# =============================================================================
# Pagination
# =============================================================================


class TestPagination:
    @pytest.mark.asyncio
    async def test_follows_link_header(self, github_client):
        page1 = _mock_response(
            json_data=[{"id": 1}],
            headers={
                "Link": '<https://api.github.com/repos/owner/repo/pulls/42/files?page=2>; '
                        'rel="next"'
            },
        )
        page2 = _mock_response(json_data=[{"id": 2}])
        mock_request = AsyncMock(side_effect=[page1, page2])
        with patch.object(github_client._client, "request", new=mock_request):
            items = await github_client._paginate("/repos/owner/repo/pulls/42/files")

        assert [i["id"] for i in items] == [1, 2]
        second_call = mock_request.call_args_list[1]
        assert second_call.args[1] == "/repos/owner/repo/pulls/42/files?page=2"
        assert second_call.kwargs["params"] is None

    def test_rejects_foreign_link(self, github_client):
        header = '<https://evil.example.com/repos/owner/repo?page=2>; rel="next"'
        assert github_client._parse_next_link(header) is None

    def test_no_next_link(self, github_client):
        header = '<https://api.github.com/repos/owner/repo?page=1>; rel="prev"'
        assert github_client._parse_next_link(header) is None
        assert github_client._parse_next_link("") is None


# =============================================================================
# Rate limiting
# =============================================================================


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_every_request_takes_a_token(self, github_client, limiter):
        with patch.object(
            github_client._client, "request",
            new=AsyncMock(return_value=_mock_response(json_data=PULL)),
        ):
            await github_client.get_change("42")
            await github_client.get_change("42")
        assert limiter.acquire.await_count == 2

    @pytest.mark.asyncio
    async def test_tracks_quota_headers(self, github_client):
        resp = _mock_response(
            json_data=PULL,
            headers={"X-RateLimit-Remaining": "321", "X-RateLimit-Reset": "1700000000"},
        )
        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            await github_client.get_change("42")
        status = github_client.get_rate_limit_status()
        assert status["primary_remaining"] == 321
        assert status["primary_reset"] == 1700000000.0

    @pytest.mark.asyncio
    async def test_low_remaining_waits_for_reset(self, github_client):
        github_client._rate_limit_remaining = 50
        github_client._rate_limit_reset = time.time() + 30
        with (
            patch.object(
                github_client._client, "request",
                new=AsyncMock(return_value=_mock_response(json_data=PULL)),
            ),
            patch(
                "reviewsync.connectors.github.client.asyncio.sleep", new=AsyncMock()
            ) as mock_sleep,
        ):
            await github_client.get_change("42")

        waited = mock_sleep.await_args_list[0].args[0]
        assert 25 < waited <= 30

    @pytest.mark.asyncio
    async def test_exhausted_403_waits_then_retries(self, github_client):
        exhausted = _mock_response(
            status_code=403,
            headers={"X-RateLimit-Remaining": "0",
                     "X-RateLimit-Reset": str(int(time.time()) + 10)},
        )
        ok = _mock_response(json_data=PULL)
        with (
            patch.object(
                github_client._client, "request", new=AsyncMock(side_effect=[exhausted, ok])
            ),
            patch("reviewsync.connectors.base.asyncio.sleep", new=AsyncMock()) as mock_sleep,
        ):
            change = await github_client.get_change("42")

        assert change.number == 42
        assert mock_sleep.await_count >= 1

    @pytest.mark.asyncio
    async def test_forbidden_without_quota_exhaustion_is_an_error(self, github_client):
        resp = _mock_response(
            status_code=403,
            json_data={"message": "Resource not accessible by integration"},
            content=b'{"message": "Resource not accessible by integration"}',
        )
        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            with pytest.raises(RemoteClientError, match="not accessible") as exc_info:
                await github_client.get_change("42")
        assert exc_info.value.status_code == 403
