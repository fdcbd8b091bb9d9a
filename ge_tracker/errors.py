"""Exception types raised by the watchlist core."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for GE Tracker failures."""


class ValidationError(TrackerError):
    """Raised when caller input is missing or inconsistent."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(TrackerError):
    """Raised when an operation targets an id absent from the metadata store."""

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Item {item_id} is not on the watchlist")
        self.item_id = item_id


class ConflictError(TrackerError):
    """Raised when a threshold edit keeps losing to a concurrent writer."""

    def __init__(self, item_id: str, attempts: int) -> None:
        super().__init__(
            f"Threshold update for item {item_id} was overwritten {attempts} times"
        )
        self.item_id = item_id
        self.attempts = attempts


class StorageError(TrackerError):
    """Raised when a key-value namespace cannot be read or written."""

    def __init__(self, message: str, *, namespace: str | None = None) -> None:
        super().__init__(message)
        self.namespace = namespace


class QuotaExceededError(StorageError):
    """Raised by the synced namespace when a write would exceed its quota."""

    def __init__(self, projected_bytes: int, quota_bytes: int, *, namespace: str | None = None) -> None:
        super().__init__(
            f"Write of {projected_bytes} bytes exceeds quota of {quota_bytes} bytes",
            namespace=namespace,
        )
        self.projected_bytes = projected_bytes
        self.quota_bytes = quota_bytes


class FetchError(TrackerError):
    """Raised inside the price source for a failed page fetch."""

    def __init__(self, item_id: str, *, status: int | None = None, url: str | None = None) -> None:
        detail = f"status={status}" if status is not None else "no response"
        super().__init__(f"Failed to fetch item {item_id} ({detail})")
        self.item_id = item_id
        self.status = status
        self.url = url
