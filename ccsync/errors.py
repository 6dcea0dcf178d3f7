"""Typed errors raised across the sync core.

Transport and snapshot failures surface to callers so a dashboard can offer a
retry. Merge anomalies (``MalformedEventError``, ``UnknownEntityRemoval``) are
only ever logged by the engine; they exist so log lines and metrics share one
vocabulary.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every ccsync error."""


class ConfigError(SyncError):
    pass


class AuthError(SyncError):
    """Missing or rejected credential. Fatal until re-authenticated."""


class NetworkError(SyncError):
    """Transient transport or fetch failure; callers may retry."""

    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotConnectedError(SyncError):
    """Publish attempted while the push channel is not connected."""


class AckTimeoutError(SyncError, TimeoutError):
    """No acknowledgment arrived for a published event in time."""


class PublishRejectedError(SyncError):
    """The server acknowledged a publish with an error payload."""


class MalformedEventError(SyncError):
    """Event without an entity key; it cannot be merged."""


class UnknownEntityRemoval(SyncError):
    """Removal for an entity that was never observed."""
