"""
Image Cache API Routes

Thin HTTP surface over an ImageCache:
- GET    /api/image-cache          - serve a resource (persistent hit or network fetch)
- GET    /api/image-cache/stats    - statistics snapshot
- POST   /api/image-cache/cursor   - move the viewing window
- POST   /api/image-cache/online   - feed the connectivity signal
- DELETE /api/image-cache/clear    - clear both tiers
- GET    /api/image-cache/health   - health check
"""

import logging
from typing import List, Optional
from urllib.parse import unquote

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .compressor import detect_mime
from .manager import ImageCache
from .models import FetchPriority

logger = logging.getLogger(__name__)

CACHE_CONTROL = "public, max-age=86400"


# ============================================
# Request Models
# ============================================

class CursorRequest(BaseModel):
    """Request model for moving the cursor"""
    index: int = Field(..., ge=0, description="Position in the ordered key list")
    keys: Optional[List[str]] = Field(None, description="Replace the key list first (optional)")


class OnlineRequest(BaseModel):
    """Request model for the connectivity signal"""
    online: bool


# ============================================
# Router
# ============================================

def create_router(cache: ImageCache) -> APIRouter:
    """Build the image cache router bound to ``cache``."""
    router = APIRouter(prefix="/api/image-cache", tags=["Image Cache"])

    @router.get("")
    @router.get("/")
    async def serve_image(
        key: str = Query(..., description="Resource key (usually the image URL)"),
    ):
        """
        Serve a resource.

        1. Checks the persistent store
        2. If missing, fetches through the fetch executor (retries included)
        3. The fetched payload is persisted in the background
        """
        key = unquote(key)

        entry = await cache.cache_get_entry(key)
        if entry is not None:
            return Response(
                content=entry.payload,
                media_type=entry.metadata.format,
                headers={"X-Cache": "HIT", "Cache-Control": CACHE_CONTROL},
            )

        result = await cache.fetch(key, FetchPriority.HIGH)
        if not result.success:
            logger.error(f"[ImageCacheAPI] Fetch failed: {result.error}")
            status = 503 if not cache.is_online else 502
            raise HTTPException(status_code=status, detail=str(result.error))

        media_type = result.content_type or detect_mime(result.payload)
        return Response(
            content=result.payload,
            media_type=media_type,
            headers={"X-Cache": "MISS", "Cache-Control": CACHE_CONTROL},
        )

    @router.get("/stats")
    async def get_cache_stats():
        """Statistics for both tiers."""
        return JSONResponse(content={
            "success": True,
            "stats": cache.stats().model_dump(),
        })

    @router.post("/cursor")
    async def set_cursor(request: CursorRequest):
        """Move the viewing window; returns the fetches that were started."""
        if request.keys is not None:
            cache.set_keys(request.keys)
        requested = cache.set_cursor(request.index)
        return JSONResponse(content={
            "success": True,
            "cursor": cache.window.cursor,
            "requested": [{"key": key, "priority": priority.value} for key, priority in requested],
        })

    @router.post("/online")
    async def set_online(request: OnlineRequest):
        cache.set_online(request.online)
        return JSONResponse(content={"success": True, "online": cache.is_online})

    @router.delete("/clear")
    async def clear_cache():
        """
        Clear all cached images, High-priority entries included.

        Use with caution.
        """
        removed = await cache.clear()
        return JSONResponse(content={
            "success": True,
            "removed_entries": removed,
            "message": "Cache cleared successfully",
        })

    @router.get("/health")
    async def health_check():
        """Health check endpoint."""
        return JSONResponse(content={
            "status": "healthy" if cache.persistence_available else "degraded",
            "service": "image-cache",
            "online": cache.is_online,
        })

    return router
