"""Version information for reviewsync.

Single source of truth for version number.
"""

__version__ = "0.3.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 0.3.0 - GitHub source, update-check cache, scheduler
# 0.2.0 - Concurrency gate and background analysis retries
# 0.1.0 - Initial Gerrit incremental sync
