"""
Statistics Aggregator

Read-only summary of both tiers. Every snapshot is O(entries), takes no
component lock for longer than a copy, and never mutates anything, so it can
be polled as often as a dashboard likes.
"""

from typing import Optional

from pydantic import BaseModel

from .models import EntryState
from .store import PersistentStore
from .sync import SyncManager
from .window import WindowCache


class StatsSnapshot(BaseModel):
    """Point-in-time statistics for both cache tiers."""

    # Memory tier
    total_keys: int = 0
    cached: int = 0
    loaded: int = 0
    loading: int = 0
    errors: int = 0
    average_load_ms: float = 0.0
    progress_loaded: int = 0
    progress_total: int = 0
    progress_percentage: int = 0

    # Persistent tier
    total_bytes: int = 0
    total_size_mb: float = 0.0
    total_entries: int = 0
    max_bytes: int = 0
    max_entries: int = 0
    usage_percent: float = 0.0
    hit_rate: float = 0.0
    compression_ratio: float = 0.0
    persistence_available: bool = True

    # Sync
    is_online: bool = True
    last_sync_at: Optional[float] = None
    pending_count: int = 0


class StatisticsAggregator:
    """Derives a StatsSnapshot from the window cache, persistent store and sync manager."""

    def __init__(
        self,
        window: WindowCache,
        store: Optional[PersistentStore] = None,
        sync: Optional[SyncManager] = None,
        persistence_available=lambda: True,
    ):
        self._window = window
        self._store = store
        self._sync = sync
        self._persistence_available = persistence_available

    def snapshot(self) -> StatsSnapshot:
        entries = self._window.entries()
        loaded = [e for e in entries if e.state == EntryState.LOADED]
        timed = [e.load_latency_ms for e in loaded if e.load_latency_ms]
        progress = self._window.loading_progress()

        snapshot = StatsSnapshot(
            total_keys=len(self._window.keys),
            cached=len(entries),
            loaded=len(loaded),
            loading=sum(1 for e in entries if e.state == EntryState.LOADING),
            errors=sum(1 for e in entries if e.state == EntryState.ERROR),
            average_load_ms=round(sum(timed) / len(timed), 2) if timed else 0.0,
            progress_loaded=progress["loaded"],
            progress_total=progress["total"],
            progress_percentage=progress["percentage"],
            persistence_available=bool(self._persistence_available()),
        )

        if self._store is not None:
            usage = self._store.usage()
            total_bytes = int(usage["total_bytes"])
            original_bytes = int(usage["original_bytes"])
            gets = int(usage["gets"])
            max_bytes = int(usage["max_bytes"])
            snapshot.total_bytes = total_bytes
            snapshot.total_size_mb = round(total_bytes / (1024 * 1024), 2)
            snapshot.total_entries = int(usage["total_entries"])
            snapshot.max_bytes = max_bytes
            snapshot.max_entries = int(usage["max_entries"])
            snapshot.usage_percent = round(total_bytes / max_bytes * 100, 1) if max_bytes > 0 else 0.0
            snapshot.hit_rate = round(usage["hits"] / gets, 4) if gets else 0.0
            snapshot.compression_ratio = (
                round(1 - total_bytes / original_bytes, 4) if original_bytes else 0.0
            )

        if self._sync is not None:
            snapshot.is_online = self._sync.is_online
            snapshot.last_sync_at = self._sync.last_sync_at
            snapshot.pending_count = self._sync.pending_count

        return snapshot
