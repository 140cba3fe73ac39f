import copy
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import UTC, build_repos_url
from app.core.errors import FetchError
from app.stores.memory import MemoryCacheStore
from app.stores.mongo import MongoCacheStore
from app.stores.sql import SqlCacheStore

BACKENDS = ["memory", "sql", "mongo"]


def repo_payload(description: str, account: str = "dxdye") -> List[Dict[str, str]]:
    return [
        {
            "html_url": f"https://github.com/{account}/example",
            "full_name": f"{account}/example",
            "description": description,
            "pushed_at": "2026-02-01T00:00:00Z",
            "language": "TypeScript",
        }
    ]


class FakeClock:
    """Advances one second per call so every write gets a distinct timestamp."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


class FakeFetcher:
    """Scripted upstream: returns queued payloads / raises queued errors."""

    def __init__(self, default: Any = None):
        self.calls: List[str] = []
        self.responses: Dict[str, List[Any]] = {}
        self.default = default

    def queue(self, url: str, *results: Any) -> None:
        self.responses.setdefault(url, []).extend(results)

    async def fetch(self, url: str) -> Any:
        self.calls.append(url)
        queued = self.responses.get(url)
        result = queued.pop(0) if queued else self.default
        if isinstance(result, Exception):
            raise result
        if result is None:
            raise FetchError(404, "Not Found")
        return result


class FakeMongoCollection:
    """Just enough of an async pymongo collection for MongoCacheStore."""

    full_name = "repo_cache.cache_entries"

    def __init__(self):
        self.docs: Dict[str, dict] = {}
        self.updates: List[dict] = []

    async def find_one(self, query: dict, projection: Optional[dict] = None) -> Optional[dict]:
        doc = self.docs.get(query["_id"])
        return copy.deepcopy(doc) if doc is not None else None

    async def update_one(self, query: dict, update: dict, upsert: bool = False) -> None:
        self.updates.append(copy.deepcopy(update))
        key = query["_id"]
        if key not in self.docs:
            if not upsert:
                return
            self.docs[key] = {"_id": key}
        doc = self.docs[key]
        doc.update(copy.deepcopy(update.get("$set", {})))
        for field, spec in update.get("$push", {}).items():
            items = doc.setdefault(field, []) + copy.deepcopy(spec["$each"])
            if "$sort" in spec:
                (sort_field, _), = spec["$sort"].items()
                items.sort(key=lambda item: item[sort_field])
            if "$slice" in spec:
                items = items[spec["$slice"]:]
            doc[field] = items

    async def delete_one(self, query: dict) -> None:
        self.docs.pop(query["_id"], None)

    async def delete_many(self, query: dict) -> None:
        self.docs.clear()

    async def distinct(self, field: str) -> List[Any]:
        return [doc[field] for doc in self.docs.values()]


@pytest.fixture
def url_a() -> str:
    return build_repos_url("dxdye")


@pytest.fixture
def url_b() -> str:
    return build_repos_url("d2tsb")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest_asyncio.fixture
async def sql_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(params=BACKENDS)
async def store(request, sql_engine):
    if request.param == "memory":
        s = MemoryCacheStore()
    elif request.param == "sql":
        s = SqlCacheStore(engine=sql_engine)
    else:
        s = MongoCacheStore(collection=FakeMongoCollection())
    await s.start()
    yield s
    await s.clear_all()
    await s.close()


async def corrupt(store, key: str) -> None:
    """Overwrite the stored payload of `key` with bytes that are not JSON."""
    if isinstance(store, MemoryCacheStore):
        store._store[key]["data"] = "{not json"
    elif isinstance(store, SqlCacheStore):
        from sqlalchemy import update

        async with store._engine.begin() as conn:
            await conn.execute(
                update(store._entries)
                .where(store._entries.c.url == key)
                .values(data="{not json")
            )
    else:
        store._collection.docs[key]["data"] = "{not json"
