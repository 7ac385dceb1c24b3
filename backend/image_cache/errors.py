"""
Image Cache Errors

Error taxonomy shared by both cache tiers:
- FetchTransientError: network/timeout failure, retried inside the fetch executor
- FetchTerminalError: retry budget exhausted, surfaced as the Error state
- CompressionError: re-encoding failed, the raw payload is stored instead
- StoreFullError: eviction could not free space without touching High entries
- PersistenceIOError: durable store unavailable, cache runs memory-tier only
"""

from typing import Optional


class ImageCacheError(Exception):
    """Base class for all image cache errors."""


class FetchTransientError(ImageCacheError):
    """A single fetch attempt failed in a way worth retrying."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"Transient fetch failure for {key}: {reason}")
        self.key = key
        self.reason = reason


class FetchTerminalError(ImageCacheError):
    """All fetch attempts for a key failed."""

    def __init__(self, key: str, attempts: int, last_error: Optional[str] = None):
        message = f"Failed to load {key} after {attempts} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.key = key
        self.attempts = attempts
        self.last_error = last_error


class CompressionError(ImageCacheError):
    """Payload could not be re-encoded."""


class StoreFullError(ImageCacheError):
    """Insert rejected: only High-priority (protected) entries are left to evict."""

    def __init__(self, key: str, needed_bytes: int, protected_entries: int):
        super().__init__(
            f"Cannot store {key}: need {needed_bytes} bytes but the remaining "
            f"{protected_entries} entries are protected"
        )
        self.key = key
        self.needed_bytes = needed_bytes
        self.protected_entries = protected_entries


class PersistenceIOError(ImageCacheError):
    """The durable store could not be read or written."""
