"""
In-memory stores.

Used for local dry runs and in the test suite. Every store records the
calls made against it so callers can assert on write traffic, and can
be told to fail specific keys or tables.
"""

import fnmatch
import hashlib
import threading
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from migration_engine.core.exceptions import CollaboratorError, ConfigurationError
from migration_engine.workers.object_storage import ObjectMeta


class InMemoryObjectStore:
    """
    ObjectStore holding buckets in a dict.

    Pass the same ``buckets`` mapping to two instances to model a
    cross-account copy between a source and a destination store.
    """

    def __init__(self, buckets: Optional[Dict[str, Dict[str, ObjectMeta]]] = None):
        self.buckets: Dict[str, Dict[str, ObjectMeta]] = buckets if buckets is not None else {}
        self.calls: List[Tuple[str, str, str]] = []
        self.fail_keys: Set[str] = set()
        self._lock = threading.Lock()

    def put_object(self, bucket: str, key: str, size: int = 0, data: Optional[bytes] = None,
                   content_type: Optional[str] = None) -> ObjectMeta:
        if data is not None:
            size = len(data)
            etag = hashlib.md5(data).hexdigest()
        else:
            etag = hashlib.md5(f"{key}:{size}".encode()).hexdigest()
        meta = ObjectMeta(
            key=key,
            size=size,
            etag=f'"{etag}"',
            last_modified=datetime.utcnow(),
            content_type=content_type,
        )
        with self._lock:
            self.buckets.setdefault(bucket, {})[key] = meta
        return meta

    def call_count(self, operation: str, bucket: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for op, b, _ in self.calls
                if op == operation and (bucket is None or b == bucket)
            )

    def _record(self, operation: str, bucket: str, key: str = ""):
        with self._lock:
            self.calls.append((operation, bucket, key))

    def list(self, bucket: str, prefix: str = "") -> List[ObjectMeta]:
        self._record("list", bucket, prefix)
        with self._lock:
            objects = self.buckets.get(bucket, {})
            return [meta for key, meta in sorted(objects.items()) if key.startswith(prefix)]

    def copy(self, src_bucket: str, src_key: str, dst_bucket: str, dst_key: str,
             preserve_metadata: bool = True) -> None:
        self._record("copy", dst_bucket, dst_key)
        if src_key in self.fail_keys:
            raise CollaboratorError(f"Copy failed for {src_key}")
        with self._lock:
            source = self.buckets.get(src_bucket, {}).get(src_key)
            if source is None:
                raise CollaboratorError(f"NoSuchKey: {src_bucket}/{src_key}")
            self.buckets.setdefault(dst_bucket, {})[dst_key] = ObjectMeta(
                key=dst_key,
                size=source.size,
                etag=source.etag,
                last_modified=datetime.utcnow(),
                content_type=source.content_type if preserve_metadata else None,
            )

    def head(self, bucket: str, key: str) -> Optional[ObjectMeta]:
        self._record("head", bucket, key)
        with self._lock:
            return self.buckets.get(bucket, {}).get(key)

    def presign(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        self._record("presign", bucket, key)
        return f"memory://{bucket}/{key}?expires={expires_in}"

    def delete(self, bucket: str, key: str) -> None:
        self._record("delete", bucket, key)
        with self._lock:
            self.buckets.get(bucket, {}).pop(key, None)


class InMemoryCacheStore:
    """CacheStore holding keys in a dict. TTLs are stored, never enforced."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(data or {})
        self.ttls: Dict[str, int] = {}
        self.writes: Counter = Counter()
        self.fail_keys: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def write_count(self) -> int:
        return sum(self.writes.values())

    def scan_keys(self, pattern: str = "*") -> List[str]:
        with self._lock:
            return sorted(key for key in self.data if fnmatch.fnmatchcase(key, pattern))

    def get(self, key: str) -> Any:
        with self._lock:
            return self.data.get(key)

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if key in self.fail_keys:
            raise CollaboratorError(f"Write failed for {key}")
        with self._lock:
            self.data[key] = value
            self.writes[key] += 1
            if ttl:
                self.ttls[key] = ttl
            else:
                self.ttls.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self.data

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            return self.ttls.get(key)


class InMemoryRelationalStore:
    """
    RelationalStore holding tables as ``{key: row}`` dicts.

    Tables are declared with ``create_table``; ``depends_on`` names the
    tables a table references, and dependency order follows them.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self.key_columns: Dict[str, str] = {}
        self.dependencies: Dict[str, List[str]] = {}
        self.write_log: List[Tuple[str, int]] = []
        self.fail_tables: Set[str] = set()
        self._lock = threading.Lock()

    def create_table(self, name: str, rows: Iterable[Dict[str, Any]] = (), key_column: str = "id",
                     depends_on: Sequence[str] = ()):
        with self._lock:
            self.tables[name] = {row[key_column]: dict(row) for row in rows}
            self.key_columns[name] = key_column
            self.dependencies[name] = list(depends_on)

    def _rows(self, table: str) -> Dict[Any, Dict[str, Any]]:
        try:
            return self.tables[table]
        except KeyError:
            raise CollaboratorError(f"No such table: {table}") from None

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._rows(table))

    def page_rows(self, table: str, cursor: Any, size: int, key_column: str = "id") -> List[Dict[str, Any]]:
        with self._lock:
            rows = sorted(self._rows(table).values(), key=lambda row: row[key_column])
        if cursor is not None:
            rows = [row for row in rows if row[key_column] > cursor]
        return [dict(row) for row in rows[:size]]

    def upsert(self, table: str, rows: Sequence[Dict[str, Any]], key_column: str = "id") -> int:
        if table in self.fail_tables:
            raise CollaboratorError(f"Write failed for {table}")
        with self._lock:
            existing = self._rows(table)
            inserted = 0
            for row in rows:
                if row[key_column] not in existing:
                    existing[row[key_column]] = dict(row)
                    inserted += 1
            self.write_log.append((table, inserted))
            return inserted

    def tables_in_dependency_order(self) -> List[str]:
        with self._lock:
            dependencies = {name: list(deps) for name, deps in self.dependencies.items()}

        ordered: List[str] = []
        visited: Set[str] = set()
        temp_visited: Set[str] = set()

        def visit(name: str):
            if name in temp_visited:
                raise ConfigurationError(f"Circular foreign keys involving table {name}")
            if name in visited:
                return
            temp_visited.add(name)
            for dependency in dependencies.get(name, []):
                if dependency in dependencies:
                    visit(dependency)
            temp_visited.remove(name)
            visited.add(name)
            ordered.append(name)

        for name in dependencies:
            visit(name)
        return ordered
