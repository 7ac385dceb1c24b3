"""
Window Cache
视窗内存缓存

Keeps the entries around a moving cursor warm:
- Cursor key and its immediate neighbours fetched at high priority
- Keys 2..radius away fetched at low priority
- Map pruned back to capacity, oldest entries outside the window first
- Per-key request sequence numbers discard stale results

Everything here is synchronous. Fetches are requested through the ``loader``
callback, which is always invoked after the lock is released.
"""

import itertools
import logging
from threading import Lock
from typing import Callable, Dict, List, Optional, Set, Tuple

from .compressor import probe
from .config import CacheBudget
from .models import EntryState, FetchPriority, FetchResult, WindowEntry

logger = logging.getLogger(__name__)

# loader(key, priority, seq)
Loader = Callable[[str, FetchPriority, int], None]


def _short(key: str) -> str:
    return key if len(key) <= 60 else f"{key[:57]}..."


def window_plan(
    keys: List[str], index: int, radius: int
) -> List[Tuple[int, str, FetchPriority]]:
    """
    Keys to keep warm around ``index``, in request order.

    The cursor comes first, then alternating -i/+i offsets outward.
    """
    if not keys or index < 0 or index >= len(keys):
        return []
    plan = [(index, keys[index], FetchPriority.HIGH)]
    for offset in range(1, radius + 1):
        priority = FetchPriority.HIGH if offset <= 1 else FetchPriority.LOW
        for neighbour in (index - offset, index + offset):
            if 0 <= neighbour < len(keys):
                plan.append((neighbour, keys[neighbour], priority))
    return plan


class WindowCache:
    """
    Thread-safe memory tier keyed by resource key.

    Usage:
        window = WindowCache(keys, budget, loader=schedule_fetch)
        window.set_cursor(10)
        entry = window.get_state(keys[10])
    """

    def __init__(
        self,
        keys: Optional[List[str]] = None,
        budget: Optional[CacheBudget] = None,
        loader: Optional[Loader] = None,
    ):
        self.budget = budget or CacheBudget()
        self._loader = loader
        self._keys: List[str] = list(keys or [])
        self._cursor: Optional[int] = None
        self._entries: Dict[str, WindowEntry] = {}
        self._lock = Lock()
        self._clock = itertools.count(1)
        # Shared across keys so a pruned and re-created entry never reuses a number
        self._seq = itertools.count(1)

    def set_loader(self, loader: Loader) -> None:
        self._loader = loader

    def apply_budget(self, budget: CacheBudget) -> None:
        """Takes effect on the next recomputation."""
        self.budget = budget

    # ============================================
    # Key list and cursor
    # ============================================

    @property
    def keys(self) -> List[str]:
        with self._lock:
            return list(self._keys)

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    def set_keys(self, keys: List[str]) -> None:
        """Replace the ordered key list; the cursor is re-applied if set."""
        with self._lock:
            self._keys = list(keys)
            cursor = self._cursor
            if cursor is not None and self._keys:
                cursor = min(cursor, len(self._keys) - 1)
            elif not self._keys:
                cursor = None
            self._cursor = None
        if cursor is not None:
            self.set_cursor(cursor)

    def window_keys(self) -> Set[str]:
        with self._lock:
            return self._window_keys_locked()

    def _window_keys_locked(self) -> Set[str]:
        if self._cursor is None:
            return set()
        radius = self.budget.window_radius
        start = max(0, self._cursor - radius)
        end = min(len(self._keys) - 1, self._cursor + radius)
        return set(self._keys[start:end + 1])

    def set_cursor(self, index: int) -> List[Tuple[str, FetchPriority]]:
        """
        Move the cursor and request fetches for the new window.

        Returns the (key, priority) pairs that were requested.
        """
        requests: List[Tuple[str, FetchPriority, int]] = []
        with self._lock:
            if not self._keys:
                self._cursor = None
                return []
            index = max(0, min(index, len(self._keys) - 1))
            self._cursor = index

            for _, key, priority in window_plan(self._keys, index, self.budget.window_radius):
                entry = self._entries.get(key)
                if entry is None:
                    entry = WindowEntry(key=key)
                    self._entries[key] = entry
                entry.touched = next(self._clock)
                # Loaded/Loading are warm; Error waits for a manual retry
                if entry.state == EntryState.UNLOADED:
                    requests.append((key, priority, self._begin_locked(entry)))

            removed = self._prune_locked()

        if removed:
            logger.debug(f"[WindowCache] Pruned {len(removed)} entries outside the window")
        self._dispatch(requests)
        return [(key, priority) for key, priority, _ in requests]

    # ============================================
    # Entry state
    # ============================================

    def get_state(self, key: str) -> WindowEntry:
        """
        Current state of ``key``.

        An unknown key yields an Unloaded view and a high-priority fetch.
        """
        requests: List[Tuple[str, FetchPriority, int]] = []
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.state != EntryState.UNLOADED:
                return entry.view()
            if entry is None:
                entry = WindowEntry(key=key, touched=next(self._clock))
                self._entries[key] = entry
            view = entry.view()
            requests.append((key, FetchPriority.HIGH, self._begin_locked(entry)))
            self._prune_locked()

        self._dispatch(requests)
        return view

    def peek(self, key: str) -> Optional[WindowEntry]:
        """State of ``key`` without side effects."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.view() if entry is not None else None

    def request(self, key: str, priority: FetchPriority = FetchPriority.LOW) -> bool:
        """Request ``key`` unless it is already warm or failed. Returns True if requested."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.state != EntryState.UNLOADED:
                return False
            if entry is None:
                entry = WindowEntry(key=key)
                self._entries[key] = entry
            entry.touched = next(self._clock)
            seq = self._begin_locked(entry)
            self._prune_locked()
        self._dispatch([(key, priority, seq)])
        return True

    def retry(self, key: str) -> bool:
        """
        Manually retry a failed key: Error -> Unloaded -> Loading.

        Returns False if the key is not in the Error state.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != EntryState.ERROR:
                return False
            entry.state = EntryState.UNLOADED
            entry.touched = next(self._clock)
            seq = self._begin_locked(entry)
        logger.info(f"[WindowCache] Retrying: {_short(key)}")
        self._dispatch([(key, FetchPriority.HIGH, seq)])
        return True

    def _begin_locked(self, entry: WindowEntry) -> int:
        entry.seq = next(self._seq)
        entry.state = EntryState.LOADING
        entry.error = None
        return entry.seq

    def is_current(self, key: str, seq: int) -> bool:
        """True while request ``seq`` is still the live request for a tracked ``key``."""
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.seq == seq

    def begin(self, key: str) -> Optional[int]:
        """
        Mark ``key`` Loading for a fetch started outside the window logic.

        Returns the request sequence number, or None if the key is not tracked.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.state == EntryState.LOADING:
                return entry.seq
            return self._begin_locked(entry)

    def complete(self, key: str, seq: int, result: FetchResult) -> bool:
        """
        Apply a fetch outcome.

        Results for removed keys or superseded requests are discarded.
        Returns True if the result was applied.
        """
        natural_size = None
        if result.success:
            info = probe(result.payload)
            if info is not None and info[0] and info[1]:
                natural_size = (info[0], info[1])

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.seq != seq:
                logger.debug(f"[WindowCache] Discarding stale result: {_short(key)}")
                return False

            entry.retry_count = max(result.attempts - 1, 0)
            entry.load_latency_ms = result.latency_ms
            entry.from_cache = result.from_cache
            if result.success:
                entry.state = EntryState.LOADED
                entry.payload = result.payload
                entry.natural_size = natural_size
                entry.error = None
                entry.persisted = entry.persisted or result.from_cache
            else:
                entry.state = EntryState.ERROR
                entry.payload = None
                entry.error = str(result.error) if result.error else "unknown error"
            return True

    def mark_persisted(self, key: str) -> None:
        """The background write can finish before complete() runs."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.persisted = True

    # ============================================
    # Eviction
    # ============================================

    def prune(self) -> List[str]:
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> List[str]:
        """Drop the oldest out-of-window entries while over capacity (assumes lock held)."""
        capacity = self.budget.window_max_entries
        if len(self._entries) <= capacity:
            return []

        keep = self._window_keys_locked()
        candidates = sorted(
            (entry for entry in self._entries.values() if entry.key not in keep),
            key=lambda e: e.touched,
        )

        removed: List[str] = []
        for entry in candidates:
            if len(self._entries) <= capacity:
                break
            # Releases the payload; a fetch still in flight will be discarded
            del self._entries[entry.key]
            removed.append(entry.key)
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries = {}
            return count

    # ============================================
    # Read-only views
    # ============================================

    def entries(self) -> List[WindowEntry]:
        with self._lock:
            return [entry.view() for entry in self._entries.values()]

    def loading_progress(self) -> Dict[str, int]:
        """Loaded / total for the current window."""
        with self._lock:
            window = self._window_keys_locked()
            loaded = sum(
                1 for key in window
                if key in self._entries and self._entries[key].state == EntryState.LOADED
            )
        total = len(window)
        return {
            "loaded": loaded,
            "total": total,
            "percentage": round(loaded / total * 100) if total else 0,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _dispatch(self, requests: List[Tuple[str, FetchPriority, int]]) -> None:
        if self._loader is None:
            return
        for key, priority, seq in requests:
            self._loader(key, priority, seq)
