"""GitHub pull request connector."""

from reviewsync.connectors.github.client import GitHubClient

__all__ = ["GitHubClient"]
