"""Review-server connectors (Gerrit, GitHub)."""

from reviewsync.connectors.base import RemoteClient

__all__ = ["RemoteClient"]
