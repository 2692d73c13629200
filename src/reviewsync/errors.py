"""Exception hierarchy shared by the connectors, the store and the engine."""

from datetime import datetime


class ReviewSyncError(Exception):
    """Base class for all reviewsync errors."""

    pass


class RemoteClientError(ReviewSyncError):
    """Raised when a review-server request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitExceeded(RemoteClientError):
    """Raised when the remote rate limit is exhausted."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}", 429)


class PaginationLimitExceeded(RemoteClientError):
    """Raised when a listing keeps returning full pages past the page cap.

    The fetch is aborted so the sync cursor is not advanced past data that
    was never read.
    """

    def __init__(self, max_pages: int, status: str | None = None):
        self.max_pages = max_pages
        self.status = status
        label = f" for status {status}" if status else ""
        super().__init__(f"More than {max_pages} pages returned{label}")


class ChangeNotFoundError(ReviewSyncError, LookupError):
    """Raised when a change id is not present in the local store."""

    def __init__(self, change_id: int):
        self.change_id = change_id
        super().__init__(f"Change {change_id} not found")


class StorageError(ReviewSyncError):
    """Raised when the local store cannot complete an operation."""

    pass
