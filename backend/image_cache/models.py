"""
Image Cache Data Models

Contains:
- FetchPriority: memory-tier fetch priority (high/low)
- CachePriority: persistent-tier eviction class (low/medium/high)
- EntryState: WindowEntry lifecycle state
- WindowEntry: one tracked key in the viewing window
- ImageMetadata / PersistentEntry: one record in the persistent store
- FetchResult: outcome of a fetch, shared by every caller attached to it
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .errors import FetchTerminalError


class FetchPriority(str, Enum):
    """Fetch priority assigned by distance from the cursor."""
    HIGH = "high"
    LOW = "low"


class CachePriority(str, Enum):
    """Eviction class of a persisted entry."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def from_rank(cls, rank: int) -> "CachePriority":
        return _RANK_PRIORITY[rank]

    def raised_to(self, other: Optional["CachePriority"]) -> "CachePriority":
        """Return the higher of the two priorities."""
        if other is None or other.rank <= self.rank:
            return self
        return other


_PRIORITY_RANK = {
    CachePriority.LOW: 0,
    CachePriority.MEDIUM: 1,
    CachePriority.HIGH: 2,
}
_RANK_PRIORITY = {rank: priority for priority, rank in _PRIORITY_RANK.items()}


def classify_priority(access_count: int, threshold: int = 3) -> CachePriority:
    """Map an access count to its eviction class."""
    if access_count >= threshold:
        return CachePriority.HIGH
    if access_count >= 2:
        return CachePriority.MEDIUM
    return CachePriority.LOW


class EntryState(str, Enum):
    """WindowEntry state."""
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


@dataclass
class WindowEntry:
    """Memory-tier state for a single key."""
    key: str
    state: EntryState = EntryState.UNLOADED
    payload: Optional[bytes] = None
    natural_size: Optional[Tuple[int, int]] = None
    load_latency_ms: Optional[float] = None
    retry_count: int = 0
    error: Optional[str] = None
    from_cache: bool = False
    persisted: bool = False

    # Request sequence number; results carrying an older number are stale
    seq: int = 0
    # Monotonic touch counter used to find the oldest entries
    touched: int = 0

    @property
    def is_active(self) -> bool:
        return self.state in (EntryState.LOADING, EntryState.LOADED)

    def view(self) -> "WindowEntry":
        """Detached copy safe to hand to callers."""
        return WindowEntry(
            key=self.key,
            state=self.state,
            payload=self.payload,
            natural_size=self.natural_size,
            load_latency_ms=self.load_latency_ms,
            retry_count=self.retry_count,
            error=self.error,
            from_cache=self.from_cache,
            persisted=self.persisted,
            seq=self.seq,
            touched=self.touched,
        )


@dataclass
class ImageMetadata:
    """Metadata recorded alongside a persisted payload."""
    width: int = 0
    height: int = 0
    original_size_bytes: int = 0
    format: str = "application/octet-stream"
    quality: float = 1.0

    @property
    def dimensions(self) -> Tuple[int, int]:
        return self.width, self.height


@dataclass
class PersistentEntry:
    """
    Durable-tier record.

    ``payload`` is None for index-only copies (statistics, eviction planning).
    """
    key: str
    size_bytes: int
    last_accessed_at: float
    access_count: int
    priority: CachePriority
    metadata: ImageMetadata = field(default_factory=ImageMetadata)
    payload: Optional[bytes] = None

    def without_payload(self) -> "PersistentEntry":
        return PersistentEntry(
            key=self.key,
            size_bytes=self.size_bytes,
            last_accessed_at=self.last_accessed_at,
            access_count=self.access_count,
            priority=self.priority,
            metadata=self.metadata,
        )


@dataclass
class FetchResult:
    """Outcome of resolving a key, either a payload or a terminal error."""
    key: str
    payload: Optional[bytes] = None
    error: Optional[FetchTerminalError] = None
    attempts: int = 0
    latency_ms: float = 0.0
    from_cache: bool = False
    content_type: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.payload is not None
