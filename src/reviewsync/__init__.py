"""reviewsync - incremental sync of code-review changes into a local store.

Keeps a local SQLite mirror of Gerrit changes (or GitHub pull requests)
current by cheap incremental passes, tracks status transitions, gates
concurrent sync requests and serves cached "is there anything new?" probes.

Python Version: 3.10+ required
"""

from .__version__ import __version__
from .config import SyncConfig, get_config, reset_config
from .errors import (
    ChangeNotFoundError,
    PaginationLimitExceeded,
    RateLimitExceeded,
    RemoteClientError,
    ReviewSyncError,
    StorageError,
)
from .logging_config import StructuredFormatter, configure_logging

__all__ = [
    "__version__",
    "ChangeNotFoundError",
    "PaginationLimitExceeded",
    "RateLimitExceeded",
    "RemoteClientError",
    "ReviewSyncError",
    "StorageError",
    "StructuredFormatter",
    "SyncConfig",
    "configure_logging",
    "get_config",
    "reset_config",
]
