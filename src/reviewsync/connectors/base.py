"""Common interface and HTTP plumbing for review-server clients.

Every connector turns wire JSON into reviewsync.models records, so the
fetcher and the sync coordinator are source-agnostic. The shared request
loop retries transient failures (5xx, 429, timeouts) with exponential
backoff and raises RemoteClientError for everything else.
"""

import asyncio
import fnmatch
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import httpx

from reviewsync.errors import RateLimitExceeded, RemoteClientError
from reviewsync.models import Change, ChangeDetail, Comment, FileDiff, FileInfo, Revision

logger = logging.getLogger("reviewsync.connectors")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a Gerrit or RFC 3339 timestamp into an aware UTC datetime.

    Gerrit sends "2024-01-02 15:04:05.000000000" (UTC, nanoseconds);
    GitHub sends "2024-01-02T15:04:05Z".
    """
    if not value:
        return None
    text = value.strip()
    if "T" not in text:
        base, _, fraction = text.partition(".")
        parsed = datetime.strptime(base, "%Y-%m-%d %H:%M:%S")
        if fraction:
            micros = int(fraction[:6].ljust(6, "0"))
            parsed = parsed.replace(microsecond=micros)
        return parsed.replace(tzinfo=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class RemoteClient(ABC):
    """Async client for one review server and one repository.

    Subclasses implement the typed query methods on top of _raw_request().
    """

    # Retry configuration
    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds, exponential: min(60, 2^attempt)
    MAX_BACKOFF = 60  # seconds

    # Timeout configuration
    CONNECT_TIMEOUT = 5.0
    READ_TIMEOUT = 30.0
    WRITE_TIMEOUT = 5.0
    POOL_TIMEOUT = 5.0

    source: str = ""

    def __init__(
        self,
        base_url: str,
        branches: Iterable[str] = (),
        headers: dict[str, str] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.branches = tuple(branches)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            auth=auth,
            transport=transport,
            timeout=httpx.Timeout(
                connect=self.CONNECT_TIMEOUT,
                read=self.READ_TIMEOUT,
                write=self.WRITE_TIMEOUT,
                pool=self.POOL_TIMEOUT,
            ),
        )

    async def __aenter__(self) -> "RemoteClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and release connections."""
        await self._client.aclose()

    # --- Source description ---

    @property
    @abstractmethod
    def statuses(self) -> tuple[str, ...]:
        """Status filters the fetcher iterates over, one listing each."""

    @property
    def sorted_by_update_desc(self) -> bool:
        """True when listings are ordered newest-update first."""
        return False

    def matches_branch(self, branch: str) -> bool:
        """Glob match against the configured branches (no branches = all)."""
        if not self.branches:
            return True
        return any(fnmatch.fnmatchcase(branch, pattern) for pattern in self.branches)

    # --- Typed queries ---

    @abstractmethod
    async def query_changes(
        self, status: str, since: datetime, start: int, limit: int
    ) -> list[Change]:
        """Return one page of changes for ``status`` starting at offset ``start``."""

    @abstractmethod
    async def get_change(self, remote_id: str) -> Change:
        """Return the summary record of a single change."""

    @abstractmethod
    async def get_change_detail(self, remote_id: str) -> ChangeDetail:
        """Return the change with revisions, files, labels and messages."""

    @abstractmethod
    async def get_file_diff(
        self, change: Change, revision: Revision, info: FileInfo
    ) -> FileDiff:
        """Return the diff of one file in one revision."""

    @abstractmethod
    async def list_comments(self, change: Change) -> list[Comment]:
        """Return every review comment of a change."""

    # --- HTTP ---

    def _backoff(self, attempt: int) -> float:
        return min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1)) + random.uniform(0, 1)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return response.text[:200]

    async def _before_request(self) -> None:
        """Hook for client-side pacing. Default: none."""

    def _after_response(self, response: httpx.Response) -> None:
        """Hook for reading quota headers. Default: none."""

    def _rate_limit_wait(self, response: httpx.Response) -> float | None:
        """Seconds to wait when ``response`` signals an exhausted quota.

        Default: 429 honours Retry-After. None means not rate limited.
        """
        if response.status_code == 429:
            try:
                return float(response.headers.get("Retry-After", "60"))
            except ValueError:
                return 60.0
        return None

    async def _raw_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make an HTTP request with retries and error handling.

        Returns:
            Raw httpx.Response (status 2xx)

        Raises:
            RemoteClientError: On non-retryable errors (auth, not found) or
                when retries are exhausted
            RateLimitExceeded: When the quota stays exhausted after retries
        """
        for attempt in range(self.MAX_RETRIES + 1):
            await self._before_request()
            try:
                response = await self._client.request(
                    method, path, params=params, headers=headers or {}
                )
            except httpx.TimeoutException as e:
                if attempt < self.MAX_RETRIES:
                    backoff = self._backoff(attempt)
                    logger.warning(
                        "Request timeout. Retrying in %.1fs (attempt %d/%d)",
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise RemoteClientError(
                    f"Request timeout after {self.MAX_RETRIES} retries: {e}"
                ) from e
            except httpx.HTTPError as e:
                raise RemoteClientError(f"HTTP error: {e}") from e

            self._after_response(response)

            wait = self._rate_limit_wait(response)
            if wait is not None:
                if attempt < self.MAX_RETRIES:
                    logger.warning(
                        "Rate limited. Waiting %.0fs (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(min(max(wait, 1.0), self.MAX_BACKOFF))
                    continue
                raise RateLimitExceeded(
                    datetime.fromtimestamp(
                        datetime.now(timezone.utc).timestamp() + wait, tz=timezone.utc
                    )
                )

            if response.status_code >= 500:
                if attempt < self.MAX_RETRIES:
                    backoff = self._backoff(attempt)
                    logger.warning(
                        "Server error %d. Retrying in %.1fs (attempt %d/%d)",
                        response.status_code,
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise RemoteClientError(
                    f"{self.source} server error {response.status_code} after "
                    f"{self.MAX_RETRIES} retries",
                    response.status_code,
                )

            if response.status_code >= 400:
                raise RemoteClientError(
                    f"{self.source} API error {response.status_code}: "
                    f"{self._error_message(response)}",
                    response.status_code,
                )

            return response

        raise RemoteClientError("Request failed after all retries")
