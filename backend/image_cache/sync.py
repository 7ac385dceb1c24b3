"""
Sync Manager

Tracks connectivity and runs reconciliation passes:
- offline -> online transition triggers one pass when auto_sync is on
- a periodic pass every sync_interval_minutes while online
- pending_count is maintained by external upload logic, read-only here
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Set

from .config import CacheBudget

logger = logging.getLogger(__name__)

Reconciler = Callable[[], Awaitable[None]]


class SyncManager:
    """
    Connectivity observer and periodic reconciliation driver.

    Usage:
        sync = SyncManager(budget, reconcile=cache.reconcile)
        sync.start()
        sync.set_online(False)
        sync.set_online(True)   # triggers a pass
        await sync.stop()
    """

    def __init__(
        self,
        budget: Optional[CacheBudget] = None,
        reconcile: Optional[Reconciler] = None,
        online: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.budget = budget or CacheBudget()
        self._reconcile = reconcile
        self._online = online
        self._clock = clock

        self.last_sync_at: Optional[float] = None
        self.sync_count = 0
        self._pending_count = 0

        self._periodic_task: Optional[asyncio.Task] = None
        self._pass_tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def pending_count(self) -> int:
        return self._pending_count

    @property
    def active_passes(self) -> int:
        """Transition-triggered passes still running."""
        return sum(1 for task in self._pass_tasks if not task.done())

    def set_pending_count(self, count: int) -> None:
        """Updated by upload logic outside this package."""
        self._pending_count = max(0, int(count))

    def set_reconciler(self, reconcile: Reconciler) -> None:
        self._reconcile = reconcile

    def apply_budget(self, budget: CacheBudget) -> None:
        previous = self.budget
        self.budget = budget
        if not self._running:
            return
        if (
            previous.auto_sync != budget.auto_sync
            or previous.sync_interval_minutes != budget.sync_interval_minutes
        ):
            self._restart_periodic()

    # ============================================
    # Lifecycle
    # ============================================

    def start(self) -> None:
        """Start the periodic loop. Must be called from a running event loop."""
        self._running = True
        self._restart_periodic()
        logger.info(
            f"[SyncManager] Started (online={self._online}, auto_sync={self.budget.auto_sync}, "
            f"interval={self.budget.sync_interval_minutes}m)"
        )

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._pass_tasks)
        if self._periodic_task is not None:
            tasks.append(self._periodic_task)
        self._periodic_task = None
        self._pass_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _restart_periodic(self) -> None:
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            self._periodic_task = None
        if self._running and self._online and self.budget.auto_sync:
            self._periodic_task = asyncio.create_task(self._periodic_loop())

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.budget.sync_interval_minutes * 60)
            if not (self._online and self.budget.auto_sync):
                return
            await self.sync_now()

    # ============================================
    # Connectivity
    # ============================================

    def set_online(self, online: bool) -> None:
        """Feed a connectivity signal; only transitions have effects."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"[SyncManager] Connectivity changed: {'online' if online else 'offline'}")

        if online and self.budget.auto_sync:
            # One pass per transition; passes from earlier flips keep running
            task = asyncio.create_task(self.sync_now())
            self._pass_tasks.add(task)
            task.add_done_callback(self._pass_tasks.discard)
        if self._running:
            self._restart_periodic()

    async def sync_now(self) -> bool:
        """
        Run one reconciliation pass.

        Best effort: failures are logged and not retried here.
        Returns True if the pass completed.
        """
        if not self._online:
            logger.debug("[SyncManager] Skipping sync while offline")
            return False
        try:
            if self._reconcile is not None:
                await self._reconcile()
        except Exception as e:
            logger.error(f"[SyncManager] Sync pass failed: {e}")
            return False
        self.last_sync_at = self._clock()
        self.sync_count += 1
        logger.debug(f"[SyncManager] Sync pass #{self.sync_count} complete")
        return True

    async def wait_idle(self) -> None:
        """Wait for every transition-triggered pass to finish."""
        while self._pass_tasks:
            await asyncio.gather(*list(self._pass_tasks), return_exceptions=True)
