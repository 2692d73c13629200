"""Gerrit Code Review connector."""

from reviewsync.connectors.gerrit.client import GerritClient

__all__ = ["GerritClient"]
