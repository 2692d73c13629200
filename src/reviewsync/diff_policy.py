"""Diff storage policy.

Decides which files get a diff fetched at all and whether a fetched diff is
stored in full or reduced to stats only. Pure functions, no I/O.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from reviewsync.models import RESERVED_PATHS, FileDiff, FileInfo

logger = logging.getLogger("reviewsync.diff_policy")

DEFAULT_MAX_SIZE_BYTES = 512000
DISPLAY_TRUNCATION_MARKER = "... (diff truncated, {remaining} more lines)"


@dataclass(frozen=True)
class DiffDecision:
    """Outcome of applying the policy to a fetched diff.

    store=True means ``text`` is persisted. stats_only=True means the diff
    was too large and only the file-level line counts are kept.
    """

    store: bool
    text: str
    stats_only: bool
    size: int = 0


class DiffPolicy:
    """Size threshold and path exclusions for per-file diffs.

    Example:
        >>> policy = DiffPolicy(max_size_bytes=10)
        >>> policy.should_store(9), policy.should_store(10)
        (True, False)
    """

    def __init__(
        self,
        max_size_bytes: int = DEFAULT_MAX_SIZE_BYTES,
        exclude_paths: Iterable[str] = (),
        exclude_patterns: Iterable[str] = (),
    ) -> None:
        if max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be positive")
        self.max_size_bytes = max_size_bytes
        self.exclude_paths = tuple(p for p in exclude_paths if p)
        self._exclude_patterns = []
        for pattern in exclude_patterns:
            try:
                self._exclude_patterns.append(re.compile(pattern))
            except re.error as e:
                logger.warning("Ignoring invalid exclude pattern %r: %s", pattern, e)

    def should_store(self, size: int) -> bool:
        """Diffs strictly below the threshold are stored in full."""
        return size < self.max_size_bytes

    def is_excluded(self, path: str) -> bool:
        if any(path.startswith(prefix) for prefix in self.exclude_paths):
            return True
        return any(p.search(path) for p in self._exclude_patterns)

    def should_diff(self, info: FileInfo) -> bool:
        """Whether a diff should be fetched for this file at all."""
        if info.binary or info.path in RESERVED_PATHS:
            return False
        return not self.is_excluded(info.path)

    @staticmethod
    def render(diff: FileDiff) -> str:
        """Render a diff as unified text.

        Header lines come first, then each chunk's common lines prefixed with
        a space, removed lines with "-" and added lines with "+". Every line
        is newline-terminated.
        """
        if diff.raw is not None:
            return diff.raw
        parts: list[str] = []
        for line in diff.header:
            parts.append(line + "\n")
        for chunk in diff.chunks:
            for line in chunk.common:
                parts.append(" " + line + "\n")
            for line in chunk.removed:
                parts.append("-" + line + "\n")
            for line in chunk.added:
                parts.append("+" + line + "\n")
        return "".join(parts)

    def process(self, diff: FileDiff) -> DiffDecision:
        if diff.binary:
            return DiffDecision(store=False, text="", stats_only=False)
        text = self.render(diff)
        size = len(text.encode("utf-8"))
        if self.should_store(size):
            return DiffDecision(store=True, text=text, stats_only=False, size=size)
        logger.info(
            "diff_stats_only",
            extra={"diff_size": size, "max_size_bytes": self.max_size_bytes},
        )
        return DiffDecision(store=False, text="", stats_only=True, size=size)


def format_for_display(text: str, max_lines: int) -> str:
    """Truncate a unified diff to at most ``max_lines`` lines for display."""
    if max_lines <= 0:
        return text
    lines = text.splitlines(keepends=True)
    if len(lines) <= max_lines:
        return text
    kept = "".join(lines[:max_lines])
    if not kept.endswith("\n"):
        kept += "\n"
    return kept + DISPLAY_TRUNCATION_MARKER.format(remaining=len(lines) - max_lines) + "\n"
