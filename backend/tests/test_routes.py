"""
Image cache HTTP route tests

Drives the FastAPI router in-process through httpx.ASGITransport.

Run:
    pytest backend/tests/test_routes.py -v
"""

import httpx
import pytest
from fastapi import FastAPI

from image_cache.routes_fastapi import create_router


@pytest.fixture
async def api(make_cache):
    """(cache, client) pair for an app exposing the image cache router."""
    cache = make_cache()
    app = FastAPI()
    app.include_router(create_router(cache))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield cache, client


# ============================================
# 1. Serving images
# ============================================

class TestServeImage:
    """GET /api/image-cache"""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, api, server):
        cache, client = api
        url = server.add_images(1)[0]

        first = await client.get("/api/image-cache", params={"key": url})
        assert first.status_code == 200
        assert first.headers["x-cache"] == "MISS"
        assert first.headers["content-type"] == "image/png"
        assert first.content == server.images[url]

        await cache.drain()

        second = await client.get("/api/image-cache", params={"key": url})
        assert second.status_code == 200
        assert second.headers["x-cache"] == "HIT"
        assert second.headers["content-type"].startswith("image/")
        assert server.calls[url] == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_is_bad_gateway(self, api, server):
        _, client = api
        response = await client.get("/api/image-cache", params={"key": "https://img.test/missing.png"})
        assert response.status_code == 502

    @pytest.mark.asyncio
    async def test_offline_miss_is_service_unavailable(self, api, server):
        cache, client = api
        cache.set_online(False)

        response = await client.get("/api/image-cache", params={"key": "https://img.test/0.png"})

        assert response.status_code == 503
        assert server.total_calls == 0

    @pytest.mark.asyncio
    async def test_key_required(self, api):
        _, client = api
        response = await client.get("/api/image-cache")
        assert response.status_code == 422


# ============================================
# 2. Control endpoints
# ============================================

class TestControlEndpoints:
    """cursor / online / clear"""

    @pytest.mark.asyncio
    async def test_set_cursor_with_keys(self, api, server):
        cache, client = api
        urls = server.add_images(6)

        response = await client.post("/api/image-cache/cursor", json={"index": 3, "keys": urls})

        data = response.json()
        assert data["success"] is True
        assert data["cursor"] == 3
        assert {item["key"] for item in data["requested"]} == set(urls[1:6])
        assert {item["priority"] for item in data["requested"]} == {"high", "low"}
        await cache.drain()

    @pytest.mark.asyncio
    async def test_set_cursor_rejects_negative_index(self, api):
        _, client = api
        response = await client.post("/api/image-cache/cursor", json={"index": -1})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_online_signal(self, api):
        cache, client = api

        response = await client.post("/api/image-cache/online", json={"online": False})

        assert response.json() == {"success": True, "online": False}
        assert not cache.is_online

    @pytest.mark.asyncio
    async def test_clear(self, api, make_image):
        cache, client = api
        await cache.cache_persist("a", make_image())
        await cache.cache_persist("b", make_image())

        response = await client.delete("/api/image-cache/clear")

        assert response.json()["removed_entries"] == 2
        assert len(cache.store) == 0


# ============================================
# 3. Stats and health
# ============================================

class TestStatsAndHealth:
    """Read-only endpoints"""

    @pytest.mark.asyncio
    async def test_stats(self, api, make_image):
        cache, client = api
        await cache.cache_persist("a", make_image())

        response = await client.get("/api/image-cache/stats")

        data = response.json()
        assert data["success"] is True
        assert data["stats"]["total_entries"] == 1
        assert data["stats"]["is_online"] is True
        assert data["stats"]["max_entries"] == 200

    @pytest.mark.asyncio
    async def test_health(self, api):
        _, client = api
        response = await client.get("/api/image-cache/health")
        assert response.json() == {"status": "healthy", "service": "image-cache", "online": True}

    @pytest.mark.asyncio
    async def test_health_degraded(self, api):
        cache, client = api
        cache.store.close()
        await cache.cache_get("anything")

        response = await client.get("/api/image-cache/health")

        assert response.json()["status"] == "degraded"
