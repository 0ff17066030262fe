"""In-memory TTL caches used by the scanner."""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger("talm.cache")


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    created_at: float


class Cache:
    """Thread-safe key/value cache with a fixed time to live."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self.data: Dict[str, CacheEntry] = {}
        self.lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evicted = 0

    def get(self, key: str) -> Tuple[Any, bool]:
        with self.lock:
            entry = self.data.get(key)
            if entry is None:
                self.misses += 1
                return None, False
            if self.clock() > entry.expires_at:
                del self.data[key]
                self.evicted += 1
                self.misses += 1
                return None, False
            self.hits += 1
            return entry.value, True

    def set(self, key: str, value: Any) -> None:
        now = self.clock()
        with self.lock:
            self.data[key] = CacheEntry(value=value, expires_at=now + self.ttl, created_at=now)

    def delete(self, key: str) -> None:
        with self.lock:
            self.data.pop(key, None)

    def clear(self) -> None:
        with self.lock:
            self.data = {}

    def size(self) -> int:
        with self.lock:
            return len(self.data)

    def stats(self) -> Tuple[int, int, int, int]:
        """(hits, misses, evicted, size)"""
        with self.lock:
            return self.hits, self.misses, self.evicted, len(self.data)

    def cleanup(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self.clock()
        with self.lock:
            expired = [k for k, e in self.data.items() if now > e.expires_at]
            for key in expired:
                del self.data[key]
            self.evicted += len(expired)
        if expired:
            logger.debug(f"Evicted {len(expired)} expired cache entries")
        return len(expired)


class NodeCache:
    """Per-IP node summaries found by the scanner."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.cache = Cache(ttl, clock)

    def get_node_info(self, ip: str) -> Optional[Any]:
        value, ok = self.cache.get(f"node:{ip}")
        return value if ok else None

    def set_node_info(self, ip: str, node: Any) -> None:
        self.cache.set(f"node:{ip}", node)

    def invalidate(self, ip: str) -> None:
        self.cache.delete(f"node:{ip}")


class HardwareCache:
    """Per-IP hardware facts collected from the admin API."""

    def __init__(self, ttl: float = 600.0, clock: Callable[[], float] = time.monotonic):
        self.cache = Cache(ttl, clock)

    def get_hardware(self, ip: str) -> Optional[Any]:
        value, ok = self.cache.get(f"hardware:{ip}")
        return value if ok else None

    def set_hardware(self, ip: str, hardware: Any) -> None:
        self.cache.set(f"hardware:{ip}", hardware)

    def invalidate(self, ip: str) -> None:
        self.cache.delete(f"hardware:{ip}")
