"""
In-memory result cache with TTL expiry and periodic cleanup
"""

import asyncio
import logging
import threading
import time
from typing import Callable, Optional

from cachetools import TTLCache

from .config import CACHE_CLEANUP_INTERVAL_SECONDS, CACHE_MAX_ENTRIES, CACHE_TTL_SECONDS
from .models import ResolveResult

logger = logging.getLogger(__name__)


class ResultCache:
    """
    Process-wide `platform:identifier` → ResolveResult store.

    Backed by a cachetools TTLCache: entries expire `ttl` seconds after
    insertion and the least recently used entry is evicted once `maxsize`
    is reached.
    TTLCache is not thread-safe on its own, so every access holds the lock.
    The cleanup scheduler purges expired entries that are never read again.
    """

    def __init__(
        self,
        ttl: float = CACHE_TTL_SECONDS,
        cleanup_interval: float = CACHE_CLEANUP_INTERVAL_SECONDS,
        maxsize: int = CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.cleanup_interval = cleanup_interval
        self._entries: "TTLCache[str, ResolveResult]" = TTLCache(
            maxsize=max(1, maxsize),
            ttl=ttl,
            timer=clock,
        )
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        logger.info(f"Result cache initialized (TTL: {self.ttl}s, max entries: {self._entries.maxsize})")

    def get(self, key: str) -> Optional[ResolveResult]:
        """Cached result for `key`, or None on miss / expiry."""
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, result: ResolveResult) -> None:
        with self._lock:
            self._entries[key] = result

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def purge_expired(self) -> int:
        """Remove expired entries; returns how many were removed."""
        with self._lock:
            expired = self._entries.expire()
        if expired:
            logger.info(f"Cache cleanup: {len(expired)} expired entries removed")
        return len(expired)

    async def start_cleanup_scheduler(self):
        """Start background cleanup task"""
        if self._cleanup_task is not None:
            logger.warning("Cache cleanup scheduler already running")
            return

        async def cleanup_loop():
            logger.info(f"Starting cache cleanup scheduler (interval: {self.cleanup_interval}s)")
            while True:
                try:
                    await asyncio.sleep(self.cleanup_interval)
                    self.purge_expired()
                except asyncio.CancelledError:
                    logger.info("Cache cleanup scheduler cancelled")
                    break
                except Exception as e:
                    logger.error(f"Cache cleanup scheduler error: {e}")

        self._cleanup_task = asyncio.create_task(cleanup_loop())

    async def stop_cleanup_scheduler(self):
        """Stop background cleanup task"""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Cache cleanup scheduler stopped")
