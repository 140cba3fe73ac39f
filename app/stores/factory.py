"""
app/stores/factory.py
Picks the cache store backend named by Settings.backend.
"""

from app.core.config import Settings
from app.stores.base import CacheStore


def create_store(settings: Settings) -> CacheStore:
    if settings.backend == "sql":
        from app.stores.sql import SqlCacheStore
        return SqlCacheStore(
            settings.database_url,
            cache_table=settings.cache_table,
            versions_table=settings.versions_table,
        )
    if settings.backend == "mongo":
        from app.stores.mongo import MongoCacheStore
        return MongoCacheStore(
            settings.mongo_url,
            db_name=settings.mongo_db,
            collection_name=settings.mongo_collection,
        )
    from app.stores.memory import MemoryCacheStore
    return MemoryCacheStore()
