"""Error taxonomy for the margin watcher."""

from __future__ import annotations


class WatcherError(Exception):
    """Base class for all watcher failures."""


class ConfigurationError(WatcherError, ValueError):
    """Raised when watcher configuration is malformed; fatal at startup."""


class TransientStoreError(WatcherError):
    """Store I/O failed (timeout, lost connectivity); retried on the next tick."""

    def __init__(self, message: str, *, code: str = "unknown") -> None:
        super().__init__(message)
        self.code = code


class InconsistentStateError(WatcherError):
    """Data-integrity problem; the account is skipped for this tick."""

    def __init__(self, message: str, *, owner_id: str | None = None) -> None:
        super().__init__(message)
        self.owner_id = owner_id


class StaleSnapshotError(InconsistentStateError):
    """The account changed between the snapshot read and the apply step."""
