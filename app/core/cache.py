"""
app/core/cache.py
═══════════════════════════════════════════════════════════════════════════
Read-through cache coordinator.
  • read_through() → stored entry if present, else fetch + populate
  • write_fresh()  → fetch → append to history (trimmed) → re-read store
  • Failed fetches raise before the store is touched → stale data stays valid
  • Concurrent misses on one key share a lock → exactly one fetch per miss
  • Unreadable stored state (CacheDecodeError) is wiped and refetched when
    recovery is enabled; every other error propagates unchanged
═══════════════════════════════════════════════════════════════════════════
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from app.core.config import DEFAULT_MAX_VERSIONS, UTC, Settings
from app.core.errors import CacheDecodeError, CacheError, CacheStoreError
from app.stores.base import CacheEntry, CacheStore, CacheVersion

log = logging.getLogger("cache")


class Fetcher(Protocol):
    async def fetch(self, url: str) -> Any: ...


def utc_now() -> datetime:
    return datetime.now(UTC)


def history_slice(entry: CacheEntry, n: Optional[int]) -> list[CacheVersion]:
    """Newest n versions, oldest first. n <= 0 / None → no history."""
    if not n or n <= 0:
        return []
    ordered = sorted(entry.history, key=lambda v: v.updated_at)
    return ordered[-n:]


class CacheCoordinator:
    def __init__(
        self,
        store: CacheStore,
        fetcher: Fetcher,
        max_versions: int = DEFAULT_MAX_VERSIONS,
        recovery_enabled: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self._fetcher = fetcher
        self._max_versions = max_versions
        self._recovery_enabled = recovery_enabled
        self._clock = clock
        self._miss_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: Settings, store: CacheStore, fetcher: Fetcher) -> "CacheCoordinator":
        return cls(
            store,
            fetcher,
            max_versions=settings.max_versions,
            recovery_enabled=settings.recovery_enabled,
        )

    # ── Read path ─────────────────────────────────────────────────────────────

    async def read_through(self, key: str) -> CacheEntry:
        entry = await self._read(key)
        if entry is not None:
            return entry

        lock = self._miss_locks.setdefault(key, asyncio.Lock())
        async with lock:
            # another request may have populated the key while we waited
            entry = await self._read(key)
            if entry is not None:
                return entry
            log.info(f"Cache miss. Fetching GitHub data for {key}")
            return await self.write_fresh(key)

    async def _read(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self.store.get(key)
        except CacheDecodeError as ex:
            if not self._recovery_enabled:
                raise
            log.warning(f"Unreadable cache state for {key} ({ex}) — resetting")
            await self.store.clear(key)
            return None

    # ── Write path ────────────────────────────────────────────────────────────

    async def write_fresh(self, key: str) -> CacheEntry:
        # FetchError propagates from here; nothing has been written yet
        data = await self._fetcher.fetch(key)
        updated_at = self._clock()
        try:
            return await self._persist(key, data, updated_at)
        except CacheDecodeError as ex:
            if not self._recovery_enabled:
                raise
            log.warning(f"Unreadable cache state for {key} during write ({ex}) — resetting")
            await self.store.clear(key)
            return await self._persist(key, data, updated_at)

    async def _persist(self, key: str, data: Any, updated_at: datetime) -> CacheEntry:
        await self.store.upsert_and_append(key, data, updated_at, self._max_versions)
        entry = await self.store.get(key)
        if entry is None:
            raise CacheStoreError(f"entry for {key} vanished right after write")
        if len(entry.history) == 1:
            log.info(f"Stored initial GitHub data for {key}")
        else:
            log.info(f"Cache updated for {key}. History count: {len(entry.history)}")
        return entry

    # ── Introspection ─────────────────────────────────────────────────────────

    async def cache_summary(self) -> dict:
        """Metadata only — safe to expose in /health."""
        now = time.time()
        summary: dict[str, dict] = {}
        for key in await self.store.keys():
            try:
                described = await self.store.describe(key)
            except CacheError as ex:
                summary[key] = {"error": type(ex).__name__}
                continue
            if described is None:
                continue
            updated_at, versions = described
            summary[key] = {
                "age_s":    round(now - updated_at.timestamp(), 1),
                "versions": versions,
            }
        return summary
