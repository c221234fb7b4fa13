"""Worker factory for building data-plane workers from plan worker specs."""

import logging
from typing import Callable, Dict, Optional

from migration_engine.adapters.redis_cache import RedisCacheStore
from migration_engine.adapters.s3 import S3ObjectStore
from migration_engine.adapters.sql import SqlAlchemyRelationalStore
from migration_engine.core.exceptions import ConfigurationError
from migration_engine.models.config import WorkerType
from migration_engine.models.plan import (
    CacheWorkerSpec,
    MigrationPlan,
    ObjectStorageWorkerSpec,
    RelationalWorkerSpec,
)
from migration_engine.workers.base import BoundWorker, MigrationWorker
from migration_engine.workers.batch import BatchExecutor
from migration_engine.workers.cache import CacheRebuildWorker, RelationalCacheSource
from migration_engine.workers.object_storage import ObjectStorageWorker
from migration_engine.workers.relational import RelationalWorker

logger = logging.getLogger(__name__)

WorkerBuilder = Callable[..., MigrationWorker]


def _build_object_storage(spec: ObjectStorageWorkerSpec, executor: BatchExecutor) -> MigrationWorker:
    store = S3ObjectStore(region=spec.region, endpoint_url=spec.endpoint_url, profile=spec.profile)
    return ObjectStorageWorker(store, executor=executor)


def _build_cache(spec: CacheWorkerSpec, executor: BatchExecutor) -> MigrationWorker:
    destination = RedisCacheStore.from_url(spec.destination_url)
    source_cache = RedisCacheStore.from_url(spec.source_url) if spec.source_url else None

    sources = []
    if spec.config.sources:
        if not spec.database_url:
            raise ConfigurationError("Cache sources need a database_url")
        database = SqlAlchemyRelationalStore.from_url(spec.database_url)
        sources = [
            RelationalCacheSource(database, source_spec, page_size=spec.config.batch_size)
            for source_spec in spec.config.sources
        ]

    return CacheRebuildWorker(destination, sources=sources, source_cache=source_cache, executor=executor)


def _build_relational(spec: RelationalWorkerSpec, executor: BatchExecutor) -> MigrationWorker:
    return RelationalWorker(
        SqlAlchemyRelationalStore.from_url(spec.source_url),
        SqlAlchemyRelationalStore.from_url(spec.destination_url),
        executor=executor,
    )


class WorkerFactory:
    """Factory class for creating workers from plan worker specs."""

    # Registry of worker builders
    _builder_registry: Dict[WorkerType, WorkerBuilder] = {}

    @classmethod
    def _register_default_builders(cls):
        if cls._builder_registry:
            return
        cls.register_builder(WorkerType.OBJECT_STORAGE, _build_object_storage)
        cls.register_builder(WorkerType.CACHE, _build_cache)
        cls.register_builder(WorkerType.RELATIONAL, _build_relational)

    @classmethod
    def register_builder(cls, worker_type: WorkerType, builder: WorkerBuilder) -> None:
        """Register a builder called as ``builder(spec, executor)``."""
        cls._builder_registry[WorkerType(worker_type)] = builder

    @classmethod
    def create_worker(cls, spec, executor: Optional[BatchExecutor] = None) -> BoundWorker:
        """
        Build the worker for a plan worker spec.

        Raises:
            ConfigurationError: If no builder is registered for the spec type
        """
        cls._register_default_builders()
        builder = cls._builder_registry.get(WorkerType(spec.type))
        if builder is None:
            raise ConfigurationError(f"No worker registered for type {spec.type}")
        worker = builder(spec, executor or BatchExecutor())
        return BoundWorker(worker=worker, config=spec.config)

    @classmethod
    def workers_for_plan(cls, plan: MigrationPlan, executor: Optional[BatchExecutor] = None) -> Dict[str, BoundWorker]:
        """Build a worker for every plan phase that declares one."""
        workers: Dict[str, BoundWorker] = {}
        for definition in plan.phases:
            if definition.worker is None:
                continue
            workers[definition.id] = cls.create_worker(definition.worker, executor)
            logger.debug(f"Phase {definition.id} bound to {definition.worker.type} worker")
        return workers
