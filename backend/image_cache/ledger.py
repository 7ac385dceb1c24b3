"""
Access Ledger

Durable map of resource key -> access count.

The ledger is the sole input to priority classification. Counts only grow;
they are reset by clear() and nothing else. Every change is written through
to a JSON file so counts survive restarts.
"""

import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)


class AccessLedger:
    """
    Thread-safe access counter backed by a JSON file.

    Pass ``path=None`` for a process-lifetime ledger (tests, memory-only mode).
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        self._counts: Dict[str, int] = {}
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            self._counts = {str(k): int(v) for k, v in data.items()}
            logger.info(f"[AccessLedger] Loaded {len(self._counts)} keys")
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"[AccessLedger] Failed to load {self.path}: {e}")
            self._counts = {}

    def _save(self) -> None:
        """Write counts to disk (assumes lock held)."""
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump(self._counts, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"[AccessLedger] Failed to save {self.path}: {e}")

    def count(self, key: str) -> int:
        with self._lock:
            return self._counts.get(key, 0)

    def record(self, key: str) -> int:
        """Count one more access to ``key`` and return the new total."""
        with self._lock:
            total = self._counts.get(key, 0) + 1
            self._counts[key] = total
            self._save()
            return total

    def observe(self, key: str, access_count: int) -> int:
        """
        Raise the stored count to ``access_count`` if it is higher.

        Used when a tier already tracks its own count; the ledger never goes down.
        """
        with self._lock:
            current = self._counts.get(key, 0)
            if access_count > current:
                self._counts[key] = access_count
                self._save()
                return access_count
            return current

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def clear(self) -> int:
        with self._lock:
            count = len(self._counts)
            self._counts = {}
            self._save()
            logger.info(f"[AccessLedger] Cleared {count} keys")
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)
