"""In-memory thumbnail cache bounded by entry count and total bytes."""

import threading
from typing import Dict, Optional


class ThumbnailCache:
    """Maps a binary reference to a rendered PNG thumbnail.

    Least recently used entries are dropped once either limit is exceeded.
    Losing an entry only costs a re-render.
    """

    def __init__(self, max_entries: int = 100, max_bytes: int = 50 * 1024 * 1024):
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._cache: Dict[str, bytes] = {}
        self._total_bytes = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        """Get a thumbnail from cache."""
        if not key:
            return None
        with self._lock:
            value = self._cache.pop(key, None)
            if value is None:
                return None
            # Re-insert to mark as most recently used
            self._cache[key] = value
            return value

    def set(self, key: str, value: bytes) -> None:
        """Store a thumbnail, evicting old entries as needed."""
        if not key or not value:
            return
        if len(value) > self.max_bytes:
            return
        with self._lock:
            old = self._cache.pop(key, None)
            if old is not None:
                self._total_bytes -= len(old)
            self._cache[key] = value
            self._total_bytes += len(value)
            self._evict()

    def delete(self, key: str) -> None:
        with self._lock:
            old = self._cache.pop(key, None)
            if old is not None:
                self._total_bytes -= len(old)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
            self._total_bytes = 0

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._cache

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @property
    def total_bytes(self) -> int:
        with self._lock:
            return self._total_bytes

    def _evict(self) -> None:
        while self._cache and (
            len(self._cache) > self.max_entries or self._total_bytes > self.max_bytes
        ):
            oldest = next(iter(self._cache))
            self._total_bytes -= len(self._cache.pop(oldest))
