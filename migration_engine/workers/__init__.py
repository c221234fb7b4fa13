"""
Data-plane workers.

Each worker moves one resource class with the batch executor and
reports progress through a ProgressReporter.
"""

from migration_engine.workers.base import (
    BoundWorker,
    MigrationProgress,
    MigrationUnit,
    MigrationWorker,
    NullProgressReporter,
    PlanSummary,
    ProgressReporter,
    RollbackReport,
    UnitApplied,
)
from migration_engine.workers.batch import BatchExecutor, BatchResult, CancellationToken, UnitOutcome
from migration_engine.workers.cache import CacheRebuildWorker, CacheStore, RelationalCacheSource
from migration_engine.workers.object_storage import ObjectMeta, ObjectStorageWorker, ObjectStore
from migration_engine.workers.relational import RelationalStore, RelationalWorker
from migration_engine.workers.verification import VerificationResult

__all__ = [
    "BatchExecutor",
    "BoundWorker",
    "BatchResult",
    "CacheRebuildWorker",
    "CacheStore",
    "CancellationToken",
    "MigrationProgress",
    "MigrationUnit",
    "MigrationWorker",
    "NullProgressReporter",
    "ObjectMeta",
    "ObjectStorageWorker",
    "ObjectStore",
    "PlanSummary",
    "ProgressReporter",
    "RelationalCacheSource",
    "RelationalStore",
    "RelationalWorker",
    "RollbackReport",
    "UnitApplied",
    "UnitOutcome",
    "VerificationResult",
]
