"""
app/stores/memory.py
═══════════════════════════════════════════════════════════════════════════
Atomic in-memory cache store.
  • Writes are protected by a threading lock → atomic replace, never partial
  • Payloads are kept as JSON text, exactly like the persistent backends,
    so a corrupted record surfaces as CacheDecodeError here too
  • Lives for the process lifetime only
═══════════════════════════════════════════════════════════════════════════
"""

import bisect
import threading
from datetime import datetime
from typing import Any, Optional

from app.stores.base import (
    CacheEntry, CacheStore, CacheVersion, as_utc, decode_payload, encode_payload,
)


class MemoryCacheStore(CacheStore):
    name = "memory"

    def __init__(self):
        # key → {"data": str, "ts": datetime, "history": [(ts, seq, str), ...]}
        self._store: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._seq = 0

    async def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            e = self._store.get(key)
            if e is None:
                return None
            raw_current, ts, rows = e["data"], e["ts"], list(e["history"])
        return CacheEntry(
            key=key,
            data=decode_payload(key, raw_current),
            updated_at=as_utc(key, ts),
            history=[
                CacheVersion(decode_payload(key, raw), as_utc(key, t)) for t, _, raw in rows
            ],
        )

    async def upsert_and_append(
        self, key: str, data: Any, updated_at: datetime, max_versions: int
    ) -> None:
        raw = encode_payload(data)
        with self._lock:
            self._seq += 1
            e = self._store.setdefault(key, {"data": raw, "ts": updated_at, "history": []})
            # (ts, seq) keeps timestamp order and breaks ties by arrival
            bisect.insort(e["history"], (updated_at, self._seq, raw))
            if max_versions > 0 and len(e["history"]) > max_versions:
                del e["history"][: len(e["history"]) - max_versions]
            tail_ts, _, tail_raw = e["history"][-1]
            e["data"], e["ts"] = tail_raw, tail_ts

    async def clear(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    async def clear_all(self) -> None:
        with self._lock:
            self._store.clear()

    async def describe(self, key: str) -> Optional[tuple[datetime, int]]:
        with self._lock:
            e = self._store.get(key)
            if e is None:
                return None
            ts, count = e["ts"], len(e["history"])
        return as_utc(key, ts), count

    async def keys(self) -> list[str]:
        with self._lock:
            return list(self._store)
