"""
Cache Budget Configuration

Budget for both cache tiers, supplied at construction and hot-reloadable.
Values can come from keyword arguments, IMAGE_CACHE_* environment variables,
or a JSON settings file saved by a previous session.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Environment variable -> budget field
ENV_FIELDS: Dict[str, str] = {
    "IMAGE_CACHE_MAX_SIZE_MB": "max_bytes",
    "IMAGE_CACHE_MAX_ENTRIES": "max_entries",
    "IMAGE_CACHE_PRIORITY_THRESHOLD": "priority_threshold",
    "IMAGE_CACHE_COMPRESSION_QUALITY": "compression_quality",
    "IMAGE_CACHE_WINDOW_RADIUS": "window_radius",
    "IMAGE_CACHE_WINDOW_MAX_ENTRIES": "window_max_entries",
    "IMAGE_CACHE_RETRY_ATTEMPTS": "retry_attempts",
    "IMAGE_CACHE_RETRY_DELAY": "retry_delay",
    "IMAGE_CACHE_FETCH_TIMEOUT": "fetch_timeout",
    "IMAGE_CACHE_AUTO_SYNC": "auto_sync",
    "IMAGE_CACHE_SYNC_INTERVAL_MINUTES": "sync_interval_minutes",
    "IMAGE_CACHE_PERSIST_ENABLED": "persist_enabled",
}


class CacheBudget(BaseModel):
    """Limits and tuning for the window cache, fetch executor and persistent store."""

    # Persistent tier
    max_bytes: int = Field(100 * MB, gt=0, description="Persistent store size limit")
    max_entries: int = Field(200, gt=0, description="Persistent store entry limit")
    priority_threshold: int = Field(3, ge=2, description="Access count that makes an entry High")
    compression_quality: float = Field(0.8, gt=0.0, le=1.0)
    persist_enabled: bool = True

    # Memory tier
    window_radius: int = Field(2, ge=0)
    window_max_entries: int = Field(20, gt=0)
    prefetch_enabled: bool = True
    prefetch_debounce: float = Field(0.1, ge=0.0)

    # Fetching
    retry_attempts: int = Field(3, ge=1, description="Total attempts per fetch")
    retry_delay: float = Field(1.0, ge=0.0, description="Base delay between attempts (seconds)")
    max_retry_delay: float = Field(30.0, ge=0.0)
    fetch_timeout: float = Field(15.0, gt=0.0)

    # Sync
    auto_sync: bool = True
    sync_interval_minutes: float = Field(30.0, gt=0.0)

    @property
    def max_in_flight(self) -> int:
        """Upper bound on concurrent memory-tier fetches."""
        return 2 * self.window_radius + 1

    def updated(self, **changes: Any) -> "CacheBudget":
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return CacheBudget.model_validate(data)

    @classmethod
    def from_env(cls, **overrides: Any) -> "CacheBudget":
        """Build a budget from IMAGE_CACHE_* environment variables."""
        data: Dict[str, Any] = {}
        for env_name, field_name in ENV_FIELDS.items():
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            if field_name == "max_bytes":
                data[field_name] = int(float(raw) * MB)
            else:
                data[field_name] = raw
        data.update(overrides)
        return cls.model_validate(data)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "CacheBudget":
        """Load saved settings, falling back to defaults."""
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            with open(path, "r") as f:
                return cls.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"[CacheBudget] Ignoring unreadable settings {path}: {e}")
            return cls()

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
