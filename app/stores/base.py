"""
app/stores/base.py
═══════════════════════════════════════════════════════════════════════════════
Backend-agnostic cache store contract.

One CacheEntry per key:
  • data / updated_at → the latest snapshot (always == history[-1])
  • history           → (data, updated_at) pairs, oldest first, bounded

Backends (memory / sql / mongo) differ only in HOW they persist this.
get() returns None for a key that was never written and raises
CacheDecodeError for a key whose stored bytes cannot be read back; callers
treat those two very differently.
═══════════════════════════════════════════════════════════════════════════════
"""

import abc
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from app.core.config import UTC
from app.core.errors import CacheDecodeError


@dataclass(frozen=True)
class CacheVersion:
    data: Any
    updated_at: datetime


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: Any
    updated_at: datetime
    history: list[CacheVersion] = field(default_factory=list)


class CacheStore(abc.ABC):
    name = "abstract"

    async def start(self) -> None:
        """Open connections / bootstrap schema. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        ...

    @abc.abstractmethod
    async def upsert_and_append(
        self, key: str, data: Any, updated_at: datetime, max_versions: int
    ) -> None:
        """
        Atomically: set current → append to history → keep newest max_versions.
        max_versions <= 0 keeps everything.
        """

    @abc.abstractmethod
    async def clear(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def clear_all(self) -> None:
        ...

    async def keys(self) -> list[str]:
        """Keys with a stored entry. Used by /health only."""
        return []

    async def describe(self, key: str) -> Optional[tuple[datetime, int]]:
        """(updated_at, version count) without decoding payloads. Used by /health."""
        entry = await self.get(key)
        if entry is None:
            return None
        return entry.updated_at, len(entry.history)


# ── Shared encode / decode helpers ────────────────────────────────────────────

def encode_payload(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def decode_payload(key: str, raw: Any) -> Any:
    """Stored text → payload. Anything unreadable is a CacheDecodeError."""
    if not isinstance(raw, (str, bytes, bytearray)):
        raise CacheDecodeError(key, f"expected JSON text, got {type(raw).__name__}")
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError) as ex:
        raise CacheDecodeError(key, f"invalid JSON: {ex}") from ex


def as_utc(key: str, value: Any) -> datetime:
    """Normalise a stored timestamp to an aware UTC datetime."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as ex:
            raise CacheDecodeError(key, f"invalid timestamp '{value}'") from ex
    if not isinstance(value, datetime):
        raise CacheDecodeError(key, f"expected timestamp, got {type(value).__name__}")
    if value.tzinfo is None:
        return UTC.localize(value)
    return value.astimezone(UTC)
