"""
Image cache test configuration

Fixtures:
- make_image: Pillow-generated image payloads
- server: in-process fake image server behind httpx.MockTransport
- clock: deterministic clock for last-access ordering
- make_store / ledger: persistent tier on a temporary directory
- make_cache: ImageCache wired to the fake server, closed after the test
"""

import asyncio
import os
import sys
from collections import Counter
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

# Make the backend packages importable without installation
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from image_cache.config import CacheBudget
from image_cache.ledger import AccessLedger
from image_cache.manager import ImageCache
from image_cache.store import PersistentStore


# ============================================
# Payloads
# ============================================

def image_bytes(width: int = 64, height: int = 48, fmt: str = "PNG", mode: str = "RGB", noise: bool = False) -> bytes:
    from PIL import Image

    if noise:
        img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
        if mode != "RGB":
            img = img.convert(mode)
    else:
        color = (200, 30, 30, 128) if mode == "RGBA" else (200, 30, 30)
        img = Image.new(mode, (width, height), color)
    output = BytesIO()
    img.save(output, format=fmt)
    return output.getvalue()


@pytest.fixture
def make_image():
    return image_bytes


# ============================================
# Fake network
# ============================================

class FakeImageServer:
    """
    Serves ``images`` by URL.

    - ``failures[url] = n`` answers the next n requests with 503
    - ``down = True`` raises a connection error for every request
    - ``gate`` (asyncio.Event) holds every request until set
    """

    def __init__(self):
        self.images: Dict[str, bytes] = {}
        self.failures: Dict[str, int] = {}
        self.calls: Counter = Counter()
        self.down = False
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0
        self._clients: List[httpx.AsyncClient] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls[url] += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.down:
                raise httpx.ConnectError("network unreachable", request=request)
            if self.failures.get(url, 0) > 0:
                self.failures[url] -= 1
                return httpx.Response(503)
            if url not in self.images:
                return httpx.Response(404)
            return httpx.Response(
                200, content=self.images[url], headers={"content-type": "image/png"}
            )
        finally:
            self.active -= 1

    def client(self) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        self._clients.append(client)
        return client

    def add_images(self, count: int, prefix: str = "https://img.test/") -> List[str]:
        urls = []
        for i in range(count):
            url = f"{prefix}{i}.png"
            self.images[url] = image_bytes(32 + i, 24 + i)
            urls.append(url)
        return urls

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def aclose(self) -> None:
        for client in self._clients:
            await client.aclose()


@pytest.fixture
async def server():
    fake = FakeImageServer()
    yield fake
    await fake.aclose()


# ============================================
# Persistent tier
# ============================================

class FakeClock:
    """Strictly increasing clock: every reading is one second later."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(tmp_path):
    return AccessLedger(tmp_path / "access_ledger.json")


@pytest.fixture
def make_store(tmp_path, ledger, clock):
    stores = []

    def _make(**budget_overrides) -> PersistentStore:
        budget = CacheBudget(**budget_overrides)
        store = PersistentStore(tmp_path / "images.db", budget=budget, ledger=ledger, clock=clock)
        stores.append(store)
        return store

    yield _make
    for store in stores:
        store.close()


# ============================================
# Full cache
# ============================================

@pytest.fixture
async def make_cache(server, tmp_path):
    caches = []

    def _make(keys=None, online: bool = True, cache_dir="cache", **budget_overrides) -> ImageCache:
        overrides = {"retry_delay": 0.0, "prefetch_debounce": 0.01}
        overrides.update(budget_overrides)
        cache = ImageCache(
            keys,
            budget=CacheBudget(**overrides),
            cache_dir=tmp_path / cache_dir if cache_dir else None,
            client=server.client(),
            online=online,
        )
        caches.append(cache)
        return cache

    yield _make
    for cache in caches:
        await cache.close()
