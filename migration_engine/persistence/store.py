"""
Persistence for migration runs.

A run is stored as one JSON document keyed by its migration id. The
progress tracker calls ``save`` explicitly; nothing is persisted as a
side effect of reading state.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

import redis

from migration_engine.core.exceptions import CollaboratorError
from migration_engine.models.run import MigrationRun

logger = logging.getLogger(__name__)


class RunStore(ABC):
    """Storage for MigrationRun documents."""

    @abstractmethod
    def save(self, run: MigrationRun) -> None:
        pass

    @abstractmethod
    def load(self, migration_id: str) -> Optional[MigrationRun]:
        pass

    @abstractmethod
    def list_ids(self) -> List[str]:
        pass

    @abstractmethod
    def delete(self, migration_id: str) -> bool:
        pass


class InMemoryRunStore(RunStore):
    """Keeps serialized runs in a dict. Used for tests and one-shot runs."""

    def __init__(self):
        self._documents: Dict[str, str] = {}

    def save(self, run: MigrationRun) -> None:
        self._documents[run.migration_id] = run.model_dump_json()

    def load(self, migration_id: str) -> Optional[MigrationRun]:
        document = self._documents.get(migration_id)
        if document is None:
            return None
        return MigrationRun.model_validate_json(document)

    def list_ids(self) -> List[str]:
        return sorted(self._documents)

    def delete(self, migration_id: str) -> bool:
        return self._documents.pop(migration_id, None) is not None


class JsonFileRunStore(RunStore):
    """One ``<migration_id>.json`` file per run in a state directory."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, migration_id: str) -> Path:
        safe_id = "".join(c if c.isalnum() or c in "-_." else "_" for c in migration_id)
        return self.directory / f"{safe_id}.json"

    def save(self, run: MigrationRun) -> None:
        path = self._path(run.migration_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".run-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(run.model_dump_json(indent=2))
            os.replace(tmp_path, path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise CollaboratorError(f"Failed to persist run {run.migration_id}: {e}") from e

    def load(self, migration_id: str) -> Optional[MigrationRun]:
        path = self._path(migration_id)
        if not path.exists():
            return None
        return MigrationRun.model_validate_json(path.read_text())

    def list_ids(self) -> List[str]:
        ids = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                ids.append(MigrationRun.model_validate_json(path.read_text()).migration_id)
            except ValueError as e:
                logger.warning(f"Ignoring unreadable run file {path}: {e}")
        return ids

    def delete(self, migration_id: str) -> bool:
        path = self._path(migration_id)
        if path.exists():
            path.unlink()
            return True
        return False


class RedisRunStore(RunStore):
    """Stores runs under ``migration:{id}:overview`` with a TTL."""

    KEY_PATTERN = "migration:{}:overview"
    DEFAULT_TTL = 7 * 24 * 3600  # 7 days

    def __init__(self, client: "redis.Redis", ttl: int = DEFAULT_TTL):
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str, ttl: int = DEFAULT_TTL) -> "RedisRunStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), ttl=ttl)

    def save(self, run: MigrationRun) -> None:
        try:
            self.client.setex(self.KEY_PATTERN.format(run.migration_id), self.ttl, run.model_dump_json())
        except redis.RedisError as e:
            raise CollaboratorError(f"Failed to persist run {run.migration_id}: {e}") from e

    def load(self, migration_id: str) -> Optional[MigrationRun]:
        try:
            document = self.client.get(self.KEY_PATTERN.format(migration_id))
        except redis.RedisError as e:
            raise CollaboratorError(f"Failed to load run {migration_id}: {e}") from e
        if document is None:
            return None
        return MigrationRun.model_validate_json(document)

    def list_ids(self) -> List[str]:
        ids = []
        for key in self.client.scan_iter(match=self.KEY_PATTERN.format("*")):
            if isinstance(key, bytes):
                key = key.decode()
            ids.append(key[len("migration:"):-len(":overview")])
        return sorted(ids)

    def delete(self, migration_id: str) -> bool:
        return bool(self.client.delete(self.KEY_PATTERN.format(migration_id)))
