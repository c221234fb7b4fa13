"""Run persistence backends."""

from migration_engine.persistence.store import (
    InMemoryRunStore,
    JsonFileRunStore,
    RedisRunStore,
    RunStore,
)

__all__ = ["InMemoryRunStore", "JsonFileRunStore", "RedisRunStore", "RunStore"]
