"""
app/stores/sql.py
═══════════════════════════════════════════════════════════════════════════════
Relational cache store (SQLAlchemy async Core).

Schema (two tables, both indexed by url):

  cache_entries   url PK │ data TEXT │ updated_at TIMESTAMPTZ   ← current value
  cache_versions  id PK  │ url       │ data TEXT │ updated_at   ← append-only log

A write is ONE transaction: current-row upsert (INSERT … ON CONFLICT) +
history insert + trim.
If any statement fails nothing is committed, so the current row can never
drift ahead of the history tail.

Works with postgresql+asyncpg in production and sqlite+aiosqlite in tests.
═══════════════════════════════════════════════════════════════════════════════
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Column, DateTime, Integer, MetaData, String, Table, Text,
    delete, func, insert, select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.core.errors import CacheStoreError
from app.stores.base import (
    CacheEntry, CacheStore, CacheVersion, as_utc, decode_payload, encode_payload,
)

log = logging.getLogger("sql_store")


def build_tables(cache_table: str, versions_table: str) -> tuple[MetaData, Table, Table]:
    metadata = MetaData()
    entries = Table(
        cache_table, metadata,
        Column("url", String(512), primary_key=True),
        Column("data", Text, nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
    )
    versions = Table(
        versions_table, metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("url", String(512), nullable=False, index=True),
        Column("data", Text, nullable=False),
        Column("updated_at", DateTime(timezone=True), nullable=False),
    )
    return metadata, entries, versions


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"pool_pre_ping": True}
    if not make_url(url).drivername.startswith("sqlite"):
        kwargs.update(pool_size=5, max_overflow=5, pool_recycle=300)
    return kwargs


_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite":     sqlite.insert,
}


def _upsert_current(dialect: str, entries: Table, key: str, raw: str, updated_at: datetime):
    """
    INSERT … ON CONFLICT (url) DO UPDATE, only moving the row forward in time.
    A single statement, so two first writes for one key cannot both insert.
    """
    dialect_insert = _DIALECT_INSERTS.get(dialect)
    if dialect_insert is None:
        raise CacheStoreError(f"unsupported SQL dialect '{dialect}' (postgresql or sqlite)")
    stmt = dialect_insert(entries).values(url=key, data=raw, updated_at=updated_at)
    return stmt.on_conflict_do_update(
        index_elements=[entries.c.url],
        set_={"data": stmt.excluded.data, "updated_at": stmt.excluded.updated_at},
        where=entries.c.updated_at <= stmt.excluded.updated_at,
    )


class SqlCacheStore(CacheStore):
    name = "sql"

    def __init__(
        self,
        database_url: str = "",
        cache_table: str = "cache_entries",
        versions_table: str = "cache_versions",
        engine: Optional[AsyncEngine] = None,
    ):
        if engine is None and not database_url:
            raise ValueError("SqlCacheStore needs a database_url or an engine")
        self._owns_engine = engine is None
        self._engine = engine or create_async_engine(database_url, **_engine_kwargs(database_url))
        self._metadata, self._entries, self._versions = build_tables(cache_table, versions_table)

    async def start(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(self._metadata.create_all)
        except SQLAlchemyError as ex:
            log.error(f"Failed to initialize cache tables: {ex}")
            raise CacheStoreError(f"schema bootstrap failed: {ex}") from ex
        log.info(f"Cache tables ready: {self._entries.name}, {self._versions.name}")

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()

    async def get(self, key: str) -> Optional[CacheEntry]:
        e, v = self._entries, self._versions
        try:
            async with self._engine.connect() as conn:
                current = (await conn.execute(
                    select(e.c.data, e.c.updated_at).where(e.c.url == key)
                )).first()
                if current is None:
                    return None
                rows = (await conn.execute(
                    select(v.c.data, v.c.updated_at)
                    .where(v.c.url == key)
                    .order_by(v.c.updated_at.asc(), v.c.id.asc())
                )).all()
        except SQLAlchemyError as ex:
            raise CacheStoreError(f"read failed for {key}: {ex}") from ex

        return CacheEntry(
            key=key,
            data=decode_payload(key, current.data),
            updated_at=as_utc(key, current.updated_at),
            history=[
                CacheVersion(decode_payload(key, r.data), as_utc(key, r.updated_at))
                for r in rows
            ],
        )

    async def upsert_and_append(
        self, key: str, data: Any, updated_at: datetime, max_versions: int
    ) -> None:
        e, v = self._entries, self._versions
        raw = encode_payload(data)
        try:
            async with self._engine.begin() as conn:
                # a newer snapshot already current stays current; this one
                # still lands in history at its timestamp position
                await conn.execute(
                    _upsert_current(conn.dialect.name, e, key, raw, updated_at)
                )
                await conn.execute(insert(v).values(url=key, data=raw, updated_at=updated_at))

                if max_versions > 0:
                    newest = (
                        select(v.c.id)
                        .where(v.c.url == key)
                        .order_by(v.c.updated_at.desc(), v.c.id.desc())
                        .limit(max_versions)
                    )
                    trimmed = await conn.execute(
                        delete(v).where(v.c.url == key, v.c.id.not_in(newest))
                    )
                    if trimmed.rowcount:
                        log.debug(f"Trimmed {trimmed.rowcount} old versions for {key}")
        except SQLAlchemyError as ex:
            raise CacheStoreError(f"write failed for {key}: {ex}") from ex

    async def clear(self, key: str) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(delete(self._versions).where(self._versions.c.url == key))
                await conn.execute(delete(self._entries).where(self._entries.c.url == key))
        except SQLAlchemyError as ex:
            raise CacheStoreError(f"clear failed for {key}: {ex}") from ex

    async def clear_all(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(delete(self._versions))
                await conn.execute(delete(self._entries))
        except SQLAlchemyError as ex:
            raise CacheStoreError(f"clear_all failed: {ex}") from ex

    async def describe(self, key: str) -> Optional[tuple[datetime, int]]:
        e, v = self._entries, self._versions
        try:
            async with self._engine.connect() as conn:
                current = (await conn.execute(
                    select(e.c.updated_at).where(e.c.url == key)
                )).first()
                if current is None:
                    return None
                count = (await conn.execute(
                    select(func.count()).select_from(v).where(v.c.url == key)
                )).scalar_one()
        except SQLAlchemyError as ex:
            raise CacheStoreError(f"describe failed for {key}: {ex}") from ex
        return as_utc(key, current.updated_at), int(count)

    async def keys(self) -> list[str]:
        try:
            async with self._engine.connect() as conn:
                rows = (await conn.execute(select(self._entries.c.url))).all()
        except SQLAlchemyError as ex:
            raise CacheStoreError(f"key listing failed: {ex}") from ex
        return [r.url for r in rows]
