"""
Cache rebuild worker.

Cache contents are derived data. By default the destination cache is
rebuilt from the source of truth (database tables) and verified against
it. Copying keys from the old cache is supported for data that has no
source of truth, such as sessions.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from migration_engine.core.exceptions import ConfigurationError
from migration_engine.models.config import CacheRebuildConfig, CacheSourceSpec
from migration_engine.workers.base import MigrationProgress, MigrationUnit, MigrationWorker, UnitApplied
from migration_engine.workers.verification import VerificationResult, checksum, choose_sample

logger = logging.getLogger(__name__)


CATEGORY_PREFIXES = (
    ("sessions", ("session:", "sess:")),
    ("api_cache", ("api:", "cache:api:")),
    ("user_cache", ("user:", "profile:")),
    ("content_cache", ("content:", "media:")),
    ("stream_cache", ("stream:", "live:")),
)

# Seconds; sessions keep their remaining TTL
CATEGORY_TTLS = {
    "user_cache": 3600,
    "content_cache": 1800,
    "api_cache": 300,
    "stream_cache": 60,
}


def categorize_key(key: str) -> str:
    for category, prefixes in CATEGORY_PREFIXES:
        if key.startswith(prefixes):
            return category
    return "other"


class CacheStore(Protocol):
    """Cache collaborator."""

    def scan_keys(self, pattern: str = "*") -> List[str]:
        ...

    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    def exists(self, key: str) -> bool:
        ...

    def ttl(self, key: str) -> Optional[int]:
        ...


@dataclass(frozen=True)
class CacheEntry:
    """A key/value pair derived from the source of truth."""
    key: str
    value: Any = field(compare=False)
    ttl: Optional[int] = None
    category: Optional[str] = None


class CacheSource(Protocol):
    """Source of truth a cache is rebuilt from."""

    def entries(self) -> Iterable[CacheEntry]:
        ...


class RelationalCacheSource:
    """
    Builds cache entries from the rows of one table.

    Each row becomes ``<key_prefix><row[key_column]>`` holding the row
    as a JSON string.
    """

    def __init__(self, store, spec: CacheSourceSpec, page_size: int = 1000):
        self.store = store
        self.spec = spec
        self.page_size = page_size

    def entries(self) -> Iterable[CacheEntry]:
        cursor = None
        while True:
            rows = self.store.page_rows(self.spec.table, cursor, self.page_size, key_column=self.spec.key_column)
            if not rows:
                return
            for row in rows:
                key = f"{self.spec.key_prefix}{row[self.spec.key_column]}"
                yield CacheEntry(
                    key=key,
                    value=json.dumps(row, sort_keys=True, default=str),
                    ttl=self.spec.ttl,
                    category=self.spec.category,
                )
            if len(rows) < self.page_size:
                return
            cursor = rows[-1][self.spec.key_column]


def _value_size(value: Any) -> int:
    if isinstance(value, (bytes, str)):
        return len(value)
    return len(json.dumps(value, default=str))


class CacheRebuildWorker(MigrationWorker):
    """
    Rebuilds a destination cache.

    Args:
        destination: Cache being rebuilt
        sources: Sources of truth used in rebuild mode and for verification
        source_cache: Old cache, read for copy mode and preserved sessions
    """

    worker_type = "cache"

    def __init__(
        self,
        destination: CacheStore,
        sources: Sequence[CacheSource] = (),
        source_cache: Optional[CacheStore] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.destination = destination
        self.sources = list(sources)
        self.source_cache = source_cache

    async def _source_entries(self) -> List[CacheEntry]:
        entries: List[CacheEntry] = []
        for source in self.sources:
            entries.extend(await asyncio.to_thread(lambda s=source: list(s.entries())))
        return entries

    async def _old_cache_keys(self, pattern: str) -> List[str]:
        if self.source_cache is None:
            return []
        return await asyncio.to_thread(self.source_cache.scan_keys, pattern)

    async def enumerate_units(self, config: CacheRebuildConfig, progress: MigrationProgress) -> List[MigrationUnit]:
        units: Dict[str, MigrationUnit] = {}

        if config.rebuild_from_source_of_truth:
            if not self.sources:
                raise ConfigurationError("Cache rebuild needs at least one source of truth")
            for entry in await self._source_entries():
                units[entry.key] = MigrationUnit(
                    id=entry.key,
                    size=_value_size(entry.value),
                    category=entry.category or categorize_key(entry.key),
                    source_ref=entry,
                )
            if config.preserve_sessions:
                for key in await self._old_cache_keys(config.pattern):
                    if categorize_key(key) == "sessions":
                        units.setdefault(key, MigrationUnit(id=key, category="sessions"))
        else:
            if self.source_cache is None:
                raise ConfigurationError("Copying cache keys needs a source cache")
            for key in await self._old_cache_keys(config.pattern):
                category = categorize_key(key)
                if category == "sessions" and not config.preserve_sessions:
                    progress.skipped.append(key)
                    continue
                units[key] = MigrationUnit(id=key, category=category)

        for key, value in config.warm_up.items():
            units[key] = MigrationUnit(
                id=key,
                size=_value_size(value),
                category="warm_up",
                source_ref=CacheEntry(key=key, value=value, ttl=config.warm_up_ttl, category="warm_up"),
            )

        return list(units.values())

    async def migrate_unit(self, config: CacheRebuildConfig, unit: MigrationUnit) -> UnitApplied:
        entry: Optional[CacheEntry] = unit.source_ref
        if entry is not None:
            value = entry.value
            ttl = entry.ttl or CATEGORY_TTLS.get(unit.category)
        else:
            value = await asyncio.to_thread(self.source_cache.get, unit.id)
            if value is None:
                # Expired in the old cache since enumeration
                return UnitApplied(unchanged=True)
            ttl = await asyncio.to_thread(self.source_cache.ttl, unit.id)
            if ttl is None:
                ttl = CATEGORY_TTLS.get(unit.category)

        current = await asyncio.to_thread(self.destination.get, unit.id)
        if current is not None and current == value:
            return UnitApplied(unchanged=True)

        await asyncio.to_thread(self.destination.set, unit.id, value, ttl)
        return UnitApplied(bytes_moved=_value_size(value))

    async def verify(self, config: CacheRebuildConfig, full: bool = False) -> VerificationResult:
        result = VerificationResult(full=full)
        sample_size = None if full else config.sample_size

        if self.sources:
            expected = choose_sample(await self._source_entries(), sample_size)
            for entry in expected:
                actual = await asyncio.to_thread(self.destination.get, entry.key)
                if actual is None:
                    result.compare(f"present:{entry.key}", True, False, message=f"{entry.key}: missing")
                else:
                    result.compare(
                        f"value:{entry.key}",
                        checksum(entry.value),
                        checksum(actual),
                        message=f"{entry.key}: value differs from source of truth",
                    )
            result.sampled += len(expected)
        else:
            result.warnings.append("No source of truth configured; checked key presence only")
            keys = [
                k for k in await self._old_cache_keys(config.pattern)
                if config.preserve_sessions or categorize_key(k) != "sessions"
            ]
            await self._check_presence(result, choose_sample(keys, sample_size))

        if config.rebuild_from_source_of_truth and config.preserve_sessions:
            sessions = [k for k in await self._old_cache_keys(config.pattern) if categorize_key(k) == "sessions"]
            await self._check_presence(result, choose_sample(sessions, sample_size))

        await self._check_presence(result, list(config.warm_up))

        logger.info(f"Cache verification: {result.summary()}")
        return result

    async def _check_presence(self, result: VerificationResult, keys: List[str]):
        for key in keys:
            present = await asyncio.to_thread(self.destination.exists, key)
            result.compare(f"present:{key}", True, present, message=f"{key}: missing")
        result.sampled += len(keys)
