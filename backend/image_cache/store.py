"""
Persistent Image Store
持久化图片缓存

Size- and count-bounded store of compressed payloads that survives restarts:
- Payloads are re-encoded by the Compressor before insert
- Priority (low/medium/high) derived from access counts, never lowered by access
- Eviction by (priority, last access), High entries are never evicted automatically
- Insert rejected with StoreFullError rather than touching protected data

Storage layout (SQLite):
    images(key PRIMARY KEY, payload, size_bytes, last_accessed_at, access_count,
           priority_rank, width, height, original_size_bytes, format, quality)
    idx_images_eviction(priority_rank, last_accessed_at)
    idx_images_last_accessed(last_accessed_at)

An in-memory metadata index (no payloads) mirrors the table so statistics
never touch the database.
"""

import logging
import sqlite3
import time
from pathlib import Path
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple, Union

from .compressor import CompressedImage, Compressor
from .config import CacheBudget
from .errors import PersistenceIOError, StoreFullError
from .ledger import AccessLedger
from .models import CachePriority, ImageMetadata, PersistentEntry, classify_priority

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS images (
    key TEXT PRIMARY KEY,
    payload BLOB NOT NULL,
    size_bytes INTEGER NOT NULL,
    last_accessed_at REAL NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0,
    priority_rank INTEGER NOT NULL DEFAULT 0,
    width INTEGER NOT NULL DEFAULT 0,
    height INTEGER NOT NULL DEFAULT 0,
    original_size_bytes INTEGER NOT NULL DEFAULT 0,
    format TEXT NOT NULL DEFAULT 'application/octet-stream',
    quality REAL NOT NULL DEFAULT 1.0
);
CREATE INDEX IF NOT EXISTS idx_images_eviction ON images(priority_rank, last_accessed_at);
CREATE INDEX IF NOT EXISTS idx_images_last_accessed ON images(last_accessed_at);
"""

INDEX_COLUMNS = (
    "key, size_bytes, last_accessed_at, access_count, priority_rank, "
    "width, height, original_size_bytes, format, quality"
)


def _short(key: str) -> str:
    return key if len(key) <= 60 else f"{key[:57]}..."


class PersistentStore:
    """
    Durable, priority-evicted key -> compressed payload store.

    All methods are blocking and thread-safe; async callers run them through
    ``asyncio.to_thread``. The ledger is only touched while the store lock is
    released, so no call ever holds two component locks.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        budget: Optional[CacheBudget] = None,
        ledger: Optional[AccessLedger] = None,
        compressor: Optional[Compressor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = str(db_path)
        self.budget = budget or CacheBudget()
        self.ledger = ledger or AccessLedger()
        self.compressor = compressor or Compressor()
        self._clock = clock

        self._lock = Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._index: Dict[str, PersistentEntry] = {}

        # Hit-rate counters
        self._gets = 0
        self._hits = 0

        self._open()

    # ============================================
    # Connection management
    # ============================================

    def _open(self) -> None:
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(SCHEMA)
            conn.commit()
            rows = conn.execute(f"SELECT {INDEX_COLUMNS} FROM images").fetchall()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceIOError(f"Cannot open image store {self.db_path}: {e}") from e

        self._conn = conn
        self._index = {row[0]: self._row_to_entry(row) for row in rows}
        logger.info(f"[PersistentStore] Opened {self.db_path} with {len(self._index)} entries")

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceIOError("Image store is closed")
        return self._conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def ping(self) -> None:
        """Raise PersistenceIOError if the database is unusable."""
        with self._lock:
            try:
                self._connection().execute("SELECT 1").fetchone()
            except sqlite3.Error as e:
                raise PersistenceIOError(f"Image store unavailable: {e}") from e

    def apply_budget(self, budget: CacheBudget) -> None:
        """Takes effect on the next put."""
        self.budget = budget

    @staticmethod
    def _row_to_entry(row: Tuple) -> PersistentEntry:
        key, size, last_accessed, access_count, rank, width, height, original, fmt, quality = row
        return PersistentEntry(
            key=key,
            size_bytes=size,
            last_accessed_at=last_accessed,
            access_count=access_count,
            priority=CachePriority.from_rank(rank),
            metadata=ImageMetadata(
                width=width,
                height=height,
                original_size_bytes=original,
                format=fmt,
                quality=quality,
            ),
        )

    # ============================================
    # Write path
    # ============================================

    def put(
        self,
        key: str,
        raw_payload: bytes,
        explicit_priority: Optional[CachePriority] = None,
    ) -> PersistentEntry:
        """
        Compress and store ``raw_payload``, evicting first if over budget.

        ``explicit_priority`` can only raise the computed priority.

        Raises:
            StoreFullError: not enough non-High entries to make room; store unchanged.
            PersistenceIOError: database write failed; store unchanged.
        """
        ledger_count = self.ledger.count(key)
        compressed = self.compressor.compress_or_passthrough(
            raw_payload, self.budget.compression_quality
        )

        with self._lock:
            conn = self._connection()
            existing = self._index.get(key)
            access_count = max(ledger_count, existing.access_count if existing else 0)

            priority = classify_priority(access_count, self.budget.priority_threshold)
            priority = priority.raised_to(explicit_priority)
            if existing is not None:
                priority = existing.priority.raised_to(priority)

            victims = self._plan_eviction(conn, key, compressed.size_bytes, existing)

            entry = PersistentEntry(
                key=key,
                size_bytes=compressed.size_bytes,
                last_accessed_at=self._clock(),
                access_count=access_count,
                priority=priority,
                metadata=self._metadata_for(compressed),
                payload=compressed.data,
            )

            try:
                with conn:
                    if victims:
                        conn.executemany(
                            "DELETE FROM images WHERE key = ?",
                            [(victim,) for victim in victims],
                        )
                    conn.execute(
                        "INSERT OR REPLACE INTO images (key, payload, size_bytes, last_accessed_at, "
                        "access_count, priority_rank, width, height, original_size_bytes, format, quality) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            entry.key,
                            entry.payload,
                            entry.size_bytes,
                            entry.last_accessed_at,
                            entry.access_count,
                            entry.priority.rank,
                            entry.metadata.width,
                            entry.metadata.height,
                            entry.metadata.original_size_bytes,
                            entry.metadata.format,
                            entry.metadata.quality,
                        ),
                    )
            except sqlite3.Error as e:
                raise PersistenceIOError(f"Failed to store {key}: {e}") from e

            for victim in victims:
                evicted = self._index.pop(victim, None)
                if evicted is not None:
                    logger.info(
                        f"[PersistentStore] Evicted {evicted.priority.value}: {_short(victim)} "
                        f"({evicted.size_bytes} bytes)"
                    )
            self._index[key] = entry.without_payload()

        logger.debug(
            f"[PersistentStore] Stored {_short(key)} ({compressed.original_size} -> "
            f"{compressed.size_bytes} bytes, {priority.value})"
        )
        return entry

    @staticmethod
    def _metadata_for(compressed: CompressedImage) -> ImageMetadata:
        return ImageMetadata(
            width=compressed.width,
            height=compressed.height,
            original_size_bytes=compressed.original_size,
            format=compressed.format,
            quality=compressed.quality,
        )

    def _plan_eviction(
        self,
        conn: sqlite3.Connection,
        key: str,
        new_size: int,
        existing: Optional[PersistentEntry],
    ) -> List[str]:
        """
        Pick the entries to delete so ``new_size`` bytes fit (assumes lock held).

        Walks the (priority_rank, last_accessed_at) index, skipping High entries.
        """
        current_bytes = self._total_bytes()
        current_count = len(self._index)
        if existing is not None:
            # Replacing frees the old copy
            current_bytes -= existing.size_bytes
            current_count -= 1

        need_bytes = current_bytes + new_size - self.budget.max_bytes
        need_count = current_count + 1 - self.budget.max_entries
        if need_bytes <= 0 and need_count <= 0:
            return []

        victims: List[str] = []
        freed = 0
        try:
            cursor = conn.execute(
                "SELECT key, size_bytes FROM images "
                "WHERE priority_rank < ? AND key != ? "
                "ORDER BY priority_rank ASC, last_accessed_at ASC",
                (CachePriority.HIGH.rank, key),
            )
            for victim, size in cursor:
                if freed >= need_bytes and len(victims) >= need_count:
                    break
                victims.append(victim)
                freed += size
        except sqlite3.Error as e:
            raise PersistenceIOError(f"Failed to plan eviction: {e}") from e

        if freed < need_bytes or len(victims) < need_count:
            protected = sum(
                1 for entry in self._index.values() if entry.priority == CachePriority.HIGH
            )
            logger.warning(
                f"[PersistentStore] Rejecting {_short(key)}: {protected} protected entries, "
                f"need {max(need_bytes, 0)} bytes / {max(need_count, 0)} slots"
            )
            raise StoreFullError(key, max(need_bytes, 0), protected)
        return victims

    def evict(self, needed_bytes: int = 0, needed_count: int = 0) -> List[str]:
        """
        Best-effort eviction of non-High entries, oldest low-priority first.

        Returns the evicted keys; may free less than asked for.
        """
        with self._lock:
            conn = self._connection()
            victims: List[str] = []
            freed = 0
            try:
                cursor = conn.execute(
                    "SELECT key, size_bytes FROM images WHERE priority_rank < ? "
                    "ORDER BY priority_rank ASC, last_accessed_at ASC",
                    (CachePriority.HIGH.rank,),
                )
                for victim, size in cursor:
                    if freed >= needed_bytes and len(victims) >= needed_count:
                        break
                    victims.append(victim)
                    freed += size
                with conn:
                    conn.executemany(
                        "DELETE FROM images WHERE key = ?",
                        [(victim,) for victim in victims],
                    )
            except sqlite3.Error as e:
                raise PersistenceIOError(f"Eviction failed: {e}") from e

            for victim in victims:
                self._index.pop(victim, None)

        if victims:
            logger.info(f"[PersistentStore] Evicted {len(victims)} entries ({freed} bytes)")
        return victims

    # ============================================
    # Read path
    # ============================================

    def get_entry(self, key: str) -> Optional[PersistentEntry]:
        """
        Return the stored entry (with payload) and count the access.

        Refreshes last_accessed_at, increments access_count and re-runs priority
        classification before returning.
        """
        ledger_count = self.ledger.count(key)

        with self._lock:
            conn = self._connection()
            self._gets += 1
            entry = self._index.get(key)
            if entry is None:
                return None

            try:
                row = conn.execute(
                    "SELECT payload FROM images WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceIOError(f"Failed to read {key}: {e}") from e

            if row is None:
                logger.warning(f"[PersistentStore] Index entry without payload: {_short(key)}")
                self._index.pop(key, None)
                return None

            access_count = max(entry.access_count, ledger_count) + 1
            priority = entry.priority.raised_to(
                classify_priority(access_count, self.budget.priority_threshold)
            )
            now = max(self._clock(), entry.last_accessed_at)

            try:
                with conn:
                    conn.execute(
                        "UPDATE images SET last_accessed_at = ?, access_count = ?, priority_rank = ? "
                        "WHERE key = ?",
                        (now, access_count, priority.rank, key),
                    )
            except sqlite3.Error as e:
                raise PersistenceIOError(f"Failed to update {key}: {e}") from e

            if priority != entry.priority:
                logger.debug(
                    f"[PersistentStore] Promoted {_short(key)}: {entry.priority.value} -> {priority.value}"
                )
            entry.access_count = access_count
            entry.last_accessed_at = now
            entry.priority = priority
            self._hits += 1

            result = entry.without_payload()
            result.payload = row[0]

        self.ledger.observe(key, access_count)
        return result

    def get(self, key: str) -> Optional[bytes]:
        entry = self.get_entry(key)
        return entry.payload if entry is not None else None

    def peek(self, key: str) -> Optional[PersistentEntry]:
        """Index copy of ``key`` without counting an access."""
        with self._lock:
            entry = self._index.get(key)
            return entry.without_payload() if entry is not None else None

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._index

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._index)

    # ============================================
    # Maintenance
    # ============================================

    def clear(self) -> int:
        """Remove every entry (High included) and reset the access ledger."""
        with self._lock:
            conn = self._connection()
            count = len(self._index)
            try:
                with conn:
                    conn.execute("DELETE FROM images")
            except sqlite3.Error as e:
                raise PersistenceIOError(f"Failed to clear image store: {e}") from e
            self._index = {}
            self._gets = 0
            self._hits = 0

        self.ledger.clear()
        logger.info(f"[PersistentStore] Cleared all {count} entries")
        return count

    # ============================================
    # Read-only views
    # ============================================

    def _total_bytes(self) -> int:
        """Assumes lock held."""
        return sum(entry.size_bytes for entry in self._index.values())

    def entries(self) -> List[PersistentEntry]:
        """Index copies of all entries, oldest access first."""
        with self._lock:
            return sorted(
                (entry.without_payload() for entry in self._index.values()),
                key=lambda e: e.last_accessed_at,
            )

    def usage(self) -> Dict[str, float]:
        with self._lock:
            total_bytes = self._total_bytes()
            original_bytes = sum(
                entry.metadata.original_size_bytes or entry.size_bytes
                for entry in self._index.values()
            )
            return {
                "total_entries": len(self._index),
                "total_bytes": total_bytes,
                "original_bytes": original_bytes,
                "gets": self._gets,
                "hits": self._hits,
                "max_bytes": self.budget.max_bytes,
                "max_entries": self.budget.max_entries,
            }
