"""
Store adapters for the data-plane workers.
"""

from migration_engine.adapters.memory import InMemoryCacheStore, InMemoryObjectStore, InMemoryRelationalStore
from migration_engine.adapters.redis_cache import RedisCacheStore
from migration_engine.adapters.s3 import S3ObjectStore
from migration_engine.adapters.sql import SqlAlchemyRelationalStore

__all__ = [
    "InMemoryCacheStore",
    "InMemoryObjectStore",
    "InMemoryRelationalStore",
    "RedisCacheStore",
    "S3ObjectStore",
    "SqlAlchemyRelationalStore",
]
