"""
Sync manager tests

Run:
    pytest backend/tests/test_sync.py -v
"""

import asyncio

import pytest

from image_cache.config import CacheBudget
from image_cache.sync import SyncManager


class CountingReconciler:
    def __init__(self, fail: bool = False):
        self.calls = 0
        self.fail = fail

    async def __call__(self) -> None:
        self.calls += 1
        if self.fail:
            raise RuntimeError("reconcile exploded")


class BlockingReconciler:
    """Holds every pass open until released."""

    def __init__(self):
        self.calls = 0
        self.release = asyncio.Event()

    async def __call__(self) -> None:
        self.calls += 1
        await self.release.wait()


# ============================================
# 1. Connectivity transitions
# ============================================

class TestConnectivity:
    """Only offline -> online transitions trigger a pass"""

    @pytest.mark.asyncio
    async def test_reconnect_triggers_pass(self, clock):
        reconcile = CountingReconciler()
        sync = SyncManager(CacheBudget(), reconcile=reconcile, online=False, clock=clock)

        sync.set_online(True)
        await sync.wait_idle()

        assert reconcile.calls == 1
        assert sync.sync_count == 1
        assert sync.last_sync_at is not None

    @pytest.mark.asyncio
    async def test_repeated_signal_is_not_a_transition(self):
        reconcile = CountingReconciler()
        sync = SyncManager(CacheBudget(), reconcile=reconcile, online=True)

        sync.set_online(True)
        await sync.wait_idle()

        assert reconcile.calls == 0

    @pytest.mark.asyncio
    async def test_no_pass_without_auto_sync(self):
        reconcile = CountingReconciler()
        sync = SyncManager(CacheBudget(auto_sync=False), reconcile=reconcile, online=False)

        sync.set_online(True)
        await sync.wait_idle()

        assert reconcile.calls == 0
        assert sync.is_online

    @pytest.mark.asyncio
    async def test_going_offline_does_not_sync(self):
        reconcile = CountingReconciler()
        sync = SyncManager(CacheBudget(), reconcile=reconcile, online=True)

        sync.set_online(False)
        await sync.wait_idle()

        assert reconcile.calls == 0
        assert not sync.is_online

    @pytest.mark.asyncio
    async def test_wait_idle_covers_every_reconnect_pass(self):
        reconcile = BlockingReconciler()
        sync = SyncManager(CacheBudget(), reconcile=reconcile, online=False)

        sync.set_online(True)
        await asyncio.sleep(0.01)
        sync.set_online(False)
        sync.set_online(True)
        await asyncio.sleep(0.01)

        assert reconcile.calls == 2
        assert sync.active_passes == 2

        reconcile.release.set()
        await sync.wait_idle()

        assert sync.active_passes == 0
        assert sync.sync_count == 2

    @pytest.mark.asyncio
    async def test_stop_cancels_every_reconnect_pass(self):
        reconcile = BlockingReconciler()
        sync = SyncManager(CacheBudget(), reconcile=reconcile, online=False)

        sync.set_online(True)
        await asyncio.sleep(0.01)
        sync.set_online(False)
        sync.set_online(True)
        await asyncio.sleep(0.01)

        await sync.stop()

        assert sync.active_passes == 0
        assert sync.sync_count == 0


# ============================================
# 2. Manual and periodic passes
# ============================================

class TestPasses:
    """sync_now and the periodic loop"""

    @pytest.mark.asyncio
    async def test_sync_now_skipped_offline(self):
        reconcile = CountingReconciler()
        sync = SyncManager(reconcile=reconcile, online=False)

        assert await sync.sync_now() is False
        assert reconcile.calls == 0
        assert sync.last_sync_at is None

    @pytest.mark.asyncio
    async def test_failed_pass_is_logged_not_raised(self):
        sync = SyncManager(reconcile=CountingReconciler(fail=True))

        assert await sync.sync_now() is False
        assert sync.sync_count == 0
        assert sync.last_sync_at is None

    @pytest.mark.asyncio
    async def test_periodic_pass(self):
        reconcile = CountingReconciler()
        # 0.001 minutes = 60ms
        sync = SyncManager(CacheBudget(sync_interval_minutes=0.001), reconcile=reconcile)

        sync.start()
        await asyncio.sleep(0.25)
        await sync.stop()

        assert reconcile.calls >= 2

    @pytest.mark.asyncio
    async def test_periodic_loop_paused_while_offline(self):
        reconcile = CountingReconciler()
        sync = SyncManager(
            CacheBudget(sync_interval_minutes=0.001), reconcile=reconcile, online=False
        )

        sync.start()
        await asyncio.sleep(0.2)
        await sync.stop()

        assert reconcile.calls == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_loop(self):
        reconcile = CountingReconciler()
        sync = SyncManager(CacheBudget(sync_interval_minutes=0.001), reconcile=reconcile)

        sync.start()
        await sync.stop()
        calls = reconcile.calls
        await asyncio.sleep(0.15)

        assert reconcile.calls == calls

    @pytest.mark.asyncio
    async def test_interval_change_restarts_loop(self):
        reconcile = CountingReconciler()
        sync = SyncManager(CacheBudget(sync_interval_minutes=60), reconcile=reconcile)

        sync.start()
        sync.apply_budget(CacheBudget(sync_interval_minutes=0.001))
        await asyncio.sleep(0.2)
        await sync.stop()

        assert reconcile.calls >= 1


def test_pending_count_never_negative():
    sync = SyncManager()
    sync.set_pending_count(4)
    assert sync.pending_count == 4
    sync.set_pending_count(-3)
    assert sync.pending_count == 0
