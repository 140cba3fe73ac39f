"""
app/stores/mongo.py
═══════════════════════════════════════════════════════════════════════════════
Document cache store (pymongo async API).

One document per key:

  {
    _id:        "<repos url>",
    data:       "<json text>",          ← current snapshot
    updated_at: ISODate,
    history:    [{data, updated_at}, …] ← oldest first, bounded
  }

A write is ONE update_one(upsert=True): $set current + $push with
$sort/$slice, so appending and trimming can never be observed separately.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
from datetime import datetime
from typing import Any, Optional

from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError

from app.core.errors import CacheDecodeError, CacheStoreError
from app.stores.base import (
    CacheEntry, CacheStore, CacheVersion, as_utc, decode_payload, encode_payload,
)

log = logging.getLogger("mongo_store")


def build_update(data: Any, updated_at: datetime, max_versions: int) -> dict:
    raw = encode_payload(data)
    push: dict = {"$each": [{"data": raw, "updated_at": updated_at}], "$sort": {"updated_at": 1}}
    if max_versions > 0:
        push["$slice"] = -max_versions
    return {
        "$set":  {"data": raw, "updated_at": updated_at},
        "$push": {"history": push},
    }


def _version(key: str, item: Any) -> CacheVersion:
    if not isinstance(item, dict) or "data" not in item or "updated_at" not in item:
        raise CacheDecodeError(key, "malformed history item")
    return CacheVersion(decode_payload(key, item["data"]), as_utc(key, item["updated_at"]))


class MongoCacheStore(CacheStore):
    name = "mongo"

    def __init__(
        self,
        url: str = "",
        db_name: str = "repo_cache",
        collection_name: str = "cache_entries",
        collection: Any = None,
    ):
        self._client: Optional[AsyncMongoClient] = None
        if collection is None:
            if not url:
                raise ValueError("MongoCacheStore needs a url or a collection")
            self._client = AsyncMongoClient(url, tz_aware=True)
            collection = self._client[db_name][collection_name]
        self._collection = collection

    async def start(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.admin.command("ping")
        except PyMongoError as ex:
            log.error(f"MongoDB unreachable: {ex}")
            raise CacheStoreError(f"mongo ping failed: {ex}") from ex
        log.info(f"MongoDB ready: {self._collection.full_name}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            doc = await self._collection.find_one({"_id": key})
        except PyMongoError as ex:
            raise CacheStoreError(f"read failed for {key}: {ex}") from ex
        if doc is None:
            return None

        history = doc.get("history")
        if not isinstance(history, list):
            raise CacheDecodeError(key, "history is not an array")
        versions = [_version(key, item) for item in history]
        if not versions:
            raise CacheDecodeError(key, "document has no history")
        # $push with $sort keeps history ordered; the tail is authoritative
        current = _version(key, {"data": doc.get("data"), "updated_at": doc.get("updated_at")})
        if current.updated_at < versions[-1].updated_at:
            current = versions[-1]
        return CacheEntry(key=key, data=current.data, updated_at=current.updated_at, history=versions)

    async def upsert_and_append(
        self, key: str, data: Any, updated_at: datetime, max_versions: int
    ) -> None:
        try:
            await self._collection.update_one(
                {"_id": key}, build_update(data, updated_at, max_versions), upsert=True
            )
        except PyMongoError as ex:
            raise CacheStoreError(f"write failed for {key}: {ex}") from ex

    async def clear(self, key: str) -> None:
        try:
            await self._collection.delete_one({"_id": key})
        except PyMongoError as ex:
            raise CacheStoreError(f"clear failed for {key}: {ex}") from ex

    async def clear_all(self) -> None:
        try:
            await self._collection.delete_many({})
        except PyMongoError as ex:
            raise CacheStoreError(f"clear_all failed: {ex}") from ex

    async def describe(self, key: str) -> Optional[tuple[datetime, int]]:
        try:
            doc = await self._collection.find_one(
                {"_id": key}, {"updated_at": 1, "history.updated_at": 1}
            )
        except PyMongoError as ex:
            raise CacheStoreError(f"describe failed for {key}: {ex}") from ex
        if doc is None:
            return None
        history = doc.get("history")
        if not isinstance(history, list) or not history:
            raise CacheDecodeError(key, "history is not a non-empty array")
        updated_at = as_utc(key, doc.get("updated_at"))
        tail = history[-1]
        if isinstance(tail, dict) and "updated_at" in tail:
            updated_at = max(updated_at, as_utc(key, tail["updated_at"]))
        return updated_at, len(history)

    async def keys(self) -> list[str]:
        try:
            return list(await self._collection.distinct("_id"))
        except PyMongoError as ex:
            raise CacheStoreError(f"key listing failed: {ex}") from ex
