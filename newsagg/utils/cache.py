"""
In-process TTL cache for the article read path.

The crawl worker calls ``invalidate("articles:*")`` after it persists new
articles; readers call ``get``/``set`` with keys under that prefix.
"""
import fnmatch
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class CacheService:
    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger('cache')

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at < self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None):
        now = self._clock()
        expires_at = now + (ttl if ttl is not None else self.default_ttl)
        with self._lock:
            expired = [k for k, (_, at) in self._entries.items() if at < now]
            for stale_key in expired:
                del self._entries[stale_key]
            self._entries[key] = (value, expires_at)

    def invalidate(self, pattern: str) -> int:
        """Drop every key matching a glob pattern such as ``articles:*``."""
        with self._lock:
            matched = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
            for key in matched:
                del self._entries[key]
        self.logger.info(f"Invalidated {len(matched)} cache keys matching '{pattern}'")
        return len(matched)
