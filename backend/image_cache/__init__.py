"""
Image Cache Module

Dual-tier cache for large ordered collections of remote images.

Features:
- Memory window kept warm around a cursor, fetched with retries
- Size- and count-bounded persistent store with priority eviction
- Compression before persisting
- Offline serving from the persistent store and periodic reconciliation
- Read-only statistics for both tiers
"""

from .config import CacheBudget
from .errors import (
    CompressionError,
    FetchTerminalError,
    FetchTransientError,
    ImageCacheError,
    PersistenceIOError,
    StoreFullError,
)
from .manager import ImageCache
from .models import CachePriority, EntryState, FetchPriority, FetchResult, WindowEntry
from .stats import StatsSnapshot

__all__ = [
    "ImageCache",
    "CacheBudget",
    "CachePriority",
    "EntryState",
    "FetchPriority",
    "FetchResult",
    "WindowEntry",
    "StatsSnapshot",
    "ImageCacheError",
    "FetchTransientError",
    "FetchTerminalError",
    "CompressionError",
    "StoreFullError",
    "PersistenceIOError",
]
