"""
Dual-Tier Image Cache

Facade over the memory and persistent tiers:
- Window cache kept warm around a cursor, fetched with retries
- Successful fetches counted in the access ledger and persisted in the background
- Offline: keys are served from the persistent store only
- Persistence failures degrade to memory-tier-only operation instead of failing fetches

All public coroutines and the cursor/get methods must run on the event loop
that owns the cache.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, List, Optional, Set, Tuple, Union

import httpx

from .compressor import Compressor
from .config import CacheBudget
from .errors import FetchTerminalError, PersistenceIOError, StoreFullError
from .fetcher import FetchExecutor
from .ledger import AccessLedger
from .models import (
    CachePriority,
    EntryState,
    FetchPriority,
    FetchResult,
    PersistentEntry,
    WindowEntry,
)
from .slots import LoadSlots
from .stats import StatisticsAggregator, StatsSnapshot
from .store import PersistentStore
from .sync import SyncManager
from .window import WindowCache

logger = logging.getLogger(__name__)


def _short(key: str) -> str:
    return key if len(key) <= 60 else f"{key[:57]}..."


class ImageCache:
    """
    Manages the memory and persistent image tiers for an ordered key list.

    Cache structure (when ``cache_dir`` is given):
    cache_dir/
    ├── images.db            # persistent store
    ├── access_ledger.json   # key -> access count
    └── settings.json        # saved budget (only with save_settings=True)

    Usage:
        async with ImageCache(urls, cache_dir="./image_cache") as cache:
            cache.set_cursor(0)
            entry = cache.get(urls[0])
            result = await cache.fetch(urls[5])
    """

    def __init__(
        self,
        keys: Optional[List[str]] = None,
        budget: Optional[CacheBudget] = None,
        cache_dir: Optional[Union[str, Path]] = None,
        client: Optional[httpx.AsyncClient] = None,
        url_for=lambda key: key,
        online: bool = True,
        save_settings: bool = False,
        compressor: Optional[Compressor] = None,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir is not None else None
        self.settings_path = self.cache_dir / "settings.json" if self.cache_dir else None
        self.save_settings = save_settings and self.settings_path is not None

        if budget is None:
            budget = CacheBudget.load(self.settings_path) if self.settings_path else CacheBudget()
        self.budget = budget

        self.ledger = AccessLedger(self.cache_dir / "access_ledger.json" if self.cache_dir else None)
        self._compressor = compressor or Compressor()
        self._degraded = False
        self.store: Optional[PersistentStore] = None
        self._open_store()

        self.fetcher = FetchExecutor(
            budget=budget,
            client=client,
            url_for=url_for,
            on_success=self._on_fetched,
        )
        self.window = WindowCache(keys, budget, loader=self._schedule_load)
        self.sync = SyncManager(budget, reconcile=self.reconcile, online=online)
        self.statistics = self._build_statistics()

        self._window_slots = LoadSlots(budget.max_in_flight)
        self._load_tasks: Set[asyncio.Task] = set()
        self._persist_tasks: Set[asyncio.Task] = set()
        self._prefetch_queue: List[str] = []
        self._prefetch_handle: Optional[asyncio.TimerHandle] = None
        self.rejected_writes = 0

    # ============================================
    # Lifecycle
    # ============================================

    async def __aenter__(self) -> "ImageCache":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def start(self) -> None:
        """Start background sync. Call from the owning event loop."""
        self.sync.start()

    async def close(self) -> None:
        if self._prefetch_handle is not None:
            self._prefetch_handle.cancel()
            self._prefetch_handle = None
        await self.sync.stop()

        for task in list(self._load_tasks):
            task.cancel()
        await asyncio.gather(*self._load_tasks, return_exceptions=True)
        await self.fetcher.close()
        await self.drain()

        if self.store is not None:
            self.store.close()
        logger.info("[ImageCache] Closed")

    async def drain(self) -> None:
        """Wait until background loads and persistence writes have finished."""
        while self._load_tasks or self._persist_tasks:
            await asyncio.gather(
                *self._load_tasks, *self._persist_tasks, return_exceptions=True
            )

    def _track(self, task: asyncio.Task, bucket: Set[asyncio.Task]) -> None:
        bucket.add(task)
        task.add_done_callback(bucket.discard)

    # ============================================
    # Persistence availability
    # ============================================

    def _open_store(self) -> None:
        db_path = self.cache_dir / "images.db" if self.cache_dir else ":memory:"
        try:
            self.store = PersistentStore(db_path, self.budget, self.ledger, self._compressor)
        except PersistenceIOError as e:
            self.store = None
            self._mark_degraded(e)

    @property
    def persistence_available(self) -> bool:
        return self.store is not None and not self._degraded

    def _mark_degraded(self, error: Exception) -> None:
        if not self._degraded:
            logger.warning(f"[ImageCache] Persistent store unavailable, memory tier only: {error}")
        self._degraded = True

    def _mark_recovered(self) -> None:
        if self._degraded:
            logger.info("[ImageCache] Persistent store available again")
        self._degraded = False

    async def _store_call(self, method: str, *args: Any) -> Any:
        """Run a blocking store method in a worker thread."""
        if not self.persistence_available:
            raise PersistenceIOError("Persistent store unavailable")
        try:
            return await asyncio.to_thread(getattr(self.store, method), *args)
        except PersistenceIOError as e:
            self._mark_degraded(e)
            raise

    async def _probe_store(self) -> bool:
        """Check the store; an unusable one is reopened from disk."""
        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.ping)
            except PersistenceIOError as e:
                self._mark_degraded(e)
                self.store.close()
                self.store = None
            else:
                self._mark_recovered()
                return True

        self._open_store()
        if self.store is None:
            return False
        self.statistics = self._build_statistics()
        self._mark_recovered()
        return True

    def _build_statistics(self) -> StatisticsAggregator:
        return StatisticsAggregator(
            self.window,
            self.store,
            self.sync,
            persistence_available=lambda: self.persistence_available,
        )

    # ============================================
    # Memory tier
    # ============================================

    def set_keys(self, keys: List[str]) -> None:
        self.window.set_keys(keys)

    def set_cursor(self, index: int) -> List[Tuple[str, FetchPriority]]:
        """Move the viewing position; returns the fetches that were requested."""
        return self.window.set_cursor(index)

    def get(self, key: str) -> WindowEntry:
        """Non-blocking read of the window state; unknown keys start loading."""
        return self.window.get_state(key)

    def retry(self, key: str) -> bool:
        return self.window.retry(key)

    def prefetch(self, key: str) -> bool:
        """
        Queue a low-priority load (e.g. on hover).

        Queued keys are issued together after the debounce delay.
        """
        if not self.budget.prefetch_enabled:
            return False
        entry = self.window.peek(key)
        if entry is not None and entry.state != EntryState.UNLOADED:
            return False
        self._prefetch_queue.append(key)
        if self._prefetch_handle is None:
            loop = asyncio.get_running_loop()
            self._prefetch_handle = loop.call_later(
                self.budget.prefetch_debounce, self._flush_prefetch
            )
        return True

    def _flush_prefetch(self) -> None:
        self._prefetch_handle = None
        queue, self._prefetch_queue = self._prefetch_queue, []
        for key in dict.fromkeys(queue):
            self.window.request(key, FetchPriority.LOW)

    def _schedule_load(self, key: str, priority: FetchPriority, seq: int) -> None:
        task = asyncio.create_task(self._load_into_window(key, priority, seq))
        self._track(task, self._load_tasks)

    async def _load_into_window(self, key: str, priority: FetchPriority, seq: int) -> None:
        async with self._window_slots:
            # Pruned or superseded while queued for a slot
            if not self.window.is_current(key, seq):
                logger.debug(f"[ImageCache] Skipping stale load: {_short(key)}")
                return
            try:
                result = await self._resolve(key, priority)
            except Exception as e:
                logger.error(f"[ImageCache] Unexpected load failure for {_short(key)}: {e}")
                result = FetchResult(key=key, error=FetchTerminalError(key, 0, str(e)))
        self.window.complete(key, seq, result)

    # ============================================
    # Fetching
    # ============================================

    async def fetch(self, key: str, priority: FetchPriority = FetchPriority.HIGH) -> FetchResult:
        """
        Explicit, awaitable fetch.

        Updates the window entry too if the key is currently tracked.
        """
        seq = self.window.begin(key)
        result = await self._resolve(key, priority)
        if seq is not None:
            self.window.complete(key, seq, result)
        return result

    async def _resolve(self, key: str, priority: FetchPriority) -> FetchResult:
        if self.sync.is_online:
            return await self.fetcher.fetch(key, priority)
        return await self._resolve_offline(key)

    async def _resolve_offline(self, key: str) -> FetchResult:
        started = time.perf_counter()
        payload = await self.cache_get(key)
        latency_ms = (time.perf_counter() - started) * 1000
        if payload is None:
            logger.debug(f"[ImageCache] Offline miss: {_short(key)}")
            return FetchResult(
                key=key,
                error=FetchTerminalError(key, 0, "offline and not in persistent cache"),
                latency_ms=latency_ms,
            )
        return FetchResult(key=key, payload=payload, latency_ms=latency_ms, from_cache=True)

    async def _on_fetched(self, result: FetchResult) -> None:
        """Runs once per successful network fetch."""
        await asyncio.to_thread(self.ledger.record, result.key)
        if self.budget.persist_enabled and self.persistence_available:
            task = asyncio.create_task(self._persist_in_background(result.key, result.payload))
            self._track(task, self._persist_tasks)

    async def _persist_in_background(self, key: str, payload: bytes) -> None:
        try:
            await self._store_call("put", key, payload, None)
        except StoreFullError as e:
            self.rejected_writes += 1
            logger.warning(f"[ImageCache] Not persisted: {e}")
            return
        except PersistenceIOError:
            return
        self.window.mark_persisted(key)

    # ============================================
    # Persistent tier
    # ============================================

    async def cache_persist(
        self,
        key: str,
        payload: bytes,
        priority: Optional[CachePriority] = None,
    ) -> Optional[PersistentEntry]:
        """
        Store ``payload`` in the persistent tier.

        Returns None when persistence is switched off.

        Raises:
            StoreFullError: only protected entries left to evict.
            PersistenceIOError: persistent store unavailable.
        """
        if not self.budget.persist_enabled:
            return None
        entry = await self._store_call("put", key, payload, priority)
        self.window.mark_persisted(key)
        return entry

    async def cache_get(self, key: str) -> Optional[bytes]:
        entry = await self.cache_get_entry(key)
        return entry.payload if entry is not None else None

    async def cache_get_entry(self, key: str) -> Optional[PersistentEntry]:
        """Persistent entry with payload, or None on a miss or while degraded."""
        try:
            return await self._store_call("get_entry", key)
        except PersistenceIOError:
            return None

    async def clear(self) -> int:
        """
        Remove every entry from both tiers and reset the access ledger.

        Returns the number of persistent entries removed.
        """
        self.window.clear()
        if self.store is None:
            await asyncio.to_thread(self.ledger.clear)
            return 0
        try:
            removed = await asyncio.to_thread(self.store.clear)
        except PersistenceIOError as e:
            self._mark_degraded(e)
            raise
        self._mark_recovered()
        return removed

    # ============================================
    # Sync
    # ============================================

    def set_online(self, online: bool) -> None:
        self.sync.set_online(online)

    @property
    def is_online(self) -> bool:
        return self.sync.is_online

    async def reconcile(self) -> None:
        """
        One reconciliation pass:
        1. Probe a degraded persistent store
        2. Retry failed entries inside the current window
        3. Persist loaded window payloads that are not stored yet
        """
        await self._probe_store()

        retried = 0
        for key in self.window.window_keys():
            entry = self.window.peek(key)
            if entry is not None and entry.state == EntryState.ERROR:
                if self.window.retry(key):
                    retried += 1

        persisted = 0
        if self.budget.persist_enabled and self.persistence_available:
            for entry in self.window.entries():
                if entry.state != EntryState.LOADED or entry.persisted or entry.payload is None:
                    continue
                try:
                    await self._store_call("put", entry.key, entry.payload, None)
                except StoreFullError as e:
                    self.rejected_writes += 1
                    logger.warning(f"[ImageCache] Not persisted during sync: {e}")
                    continue
                except PersistenceIOError:
                    break
                self.window.mark_persisted(entry.key)
                persisted += 1

        logger.info(f"[ImageCache] Reconciled: {retried} retried, {persisted} persisted")

    # ============================================
    # Configuration and statistics
    # ============================================

    def update_budget(self, **changes: Any) -> CacheBudget:
        """
        Hot-reload the budget; takes effect on the next eviction/fetch cycle.

        Raises:
            pydantic.ValidationError: invalid values; the live budget is unchanged.
        """
        budget = self.budget.updated(**changes)
        self.budget = budget

        self.window.apply_budget(budget)
        self.fetcher.apply_budget(budget)
        if self.store is not None:
            self.store.apply_budget(budget)
        self.sync.apply_budget(budget)
        # Loads already holding a slot keep it; the new limit gates the next ones
        self._window_slots.resize(budget.max_in_flight)

        if self.save_settings:
            budget.save(self.settings_path)
        logger.info(f"[ImageCache] Budget updated: {sorted(changes)}")
        return budget

    def stats(self) -> StatsSnapshot:
        return self.statistics.snapshot()
