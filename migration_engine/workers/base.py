"""
Data-plane worker contract.

A worker moves one resource class (objects, cache keys, table rows)
from a source to a destination. Workers know nothing about phases: they
report progress through an injected ProgressReporter under an opaque
progress key.
"""

import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from migration_engine.models.config import WorkerConfig
from migration_engine.models.phase import WORKER_METADATA_VERSION, WorkerMetadata
from migration_engine.workers.batch import BatchExecutor, BatchResult, CancellationToken, UnitOutcome
from migration_engine.workers.verification import VerificationResult

logger = logging.getLogger(__name__)


class ProgressReporter(Protocol):
    """Receives progress from workers."""

    def report(self, phase_id: str, percent: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        ...

    def record_operations(
        self,
        succeeded: int = 0,
        failed: int = 0,
        bytes_moved: int = 0,
        elapsed: float = 0.0
    ) -> None:
        ...


class NullProgressReporter:
    """Reporter that drops everything."""

    def report(self, phase_id: str, percent: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        pass

    def record_operations(self, succeeded: int = 0, failed: int = 0, bytes_moved: int = 0, elapsed: float = 0.0) -> None:
        pass


@dataclass(frozen=True)
class MigrationUnit:
    """One idempotently retriable item: an object key, a cache key, a row batch."""
    id: str
    size: int = 0
    category: str = "other"
    source_ref: Any = None


@dataclass(frozen=True)
class UnitApplied:
    """What a unit function did."""
    bytes_moved: int = 0
    unchanged: bool = False


class MigrationProgress(BaseModel):
    """Counters for one execute call."""
    total_units: int = 0
    migrated_units: int = 0
    failed_units: int = 0
    unchanged_units: int = 0
    total_size: int = 0
    migrated_size: int = 0
    errors: List[str] = Field(default_factory=list)
    categories: Dict[str, int] = Field(default_factory=dict)
    skipped: List[str] = Field(default_factory=list)
    not_attempted: int = 0
    size_unit: str = "bytes"
    dry_run: bool = False
    cancelled: bool = False
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_successful(self) -> bool:
        return self.failed_units == 0 and not self.cancelled and self.not_attempted == 0

    @property
    def percent(self) -> float:
        if self.total_units == 0:
            return 100.0
        return min(100.0, (self.migrated_units + self.failed_units) * 100.0 / self.total_units)

    def add_category(self, category: str, count: int = 1):
        self.categories[category] = self.categories.get(category, 0) + count

    def apply_batch(self, batch: BatchResult):
        self.failed_units += batch.failed
        self.errors.extend(str(error) for error in batch.errors)
        self.not_attempted += batch.not_attempted
        self.cancelled = self.cancelled or batch.cancelled

    def to_metadata(self, worker_type: str) -> WorkerMetadata:
        metadata = WorkerMetadata(
            metadata_version=WORKER_METADATA_VERSION,
            worker_type=worker_type,
            units_total=self.total_units,
            units_migrated=self.migrated_units,
            units_failed=self.failed_units,
            units_skipped=self.unchanged_units,
            categories=dict(self.categories),
            skipped_tables=list(self.skipped),
        )
        if self.size_unit == "rows":
            metadata["rows_total"] = self.total_size
            metadata["rows_migrated"] = self.migrated_size
        else:
            metadata["bytes_total"] = self.total_size
            metadata["bytes_migrated"] = self.migrated_size
        return metadata


class PlanSummary(BaseModel):
    """What a migration would move."""
    total_units: int = 0
    total_size: int = 0
    categories: Dict[str, int] = Field(default_factory=dict)
    skipped: List[str] = Field(default_factory=list)


class RollbackReport(BaseModel):
    """What a worker did with the source after a run."""
    action: str = "skip"
    source_untouched: bool = True
    failed_units: int = 0
    deleted_units: int = 0
    rerun_allowed: bool = True
    message: str = ""


class MigrationWorker(ABC):
    """
    Base class for data-plane workers.

    ``execute`` is the single code path for dry runs and real runs: in a
    dry run the units are enumerated from the source and counted, and no
    call is made against the destination write path.
    """

    worker_type = "base"

    def __init__(
        self,
        executor: Optional[BatchExecutor] = None,
        reporter: Optional[ProgressReporter] = None,
        progress_key: Optional[str] = None
    ):
        self.executor = executor or BatchExecutor()
        self.reporter: ProgressReporter = reporter or NullProgressReporter()
        self.progress_key = progress_key or self.worker_type

    def bind_reporter(self, reporter: ProgressReporter, progress_key: str):
        self.reporter = reporter
        self.progress_key = progress_key

    @abstractmethod
    async def enumerate_units(self, config: WorkerConfig, progress: MigrationProgress) -> List[MigrationUnit]:
        """List the units to migrate. Reads from the source only."""
        pass

    @abstractmethod
    async def migrate_unit(self, config: WorkerConfig, unit: MigrationUnit) -> UnitApplied:
        """Apply one unit to the destination. Must be idempotent."""
        pass

    @abstractmethod
    async def verify(self, config: WorkerConfig, full: bool = False) -> VerificationResult:
        pass

    async def plan(self, config: WorkerConfig) -> PlanSummary:
        progress = await self.execute(config, dry_run=True)
        return PlanSummary(
            total_units=progress.total_units,
            total_size=progress.total_size,
            categories=dict(progress.categories),
            skipped=list(progress.skipped),
        )

    async def execute(
        self,
        config: WorkerConfig,
        dry_run: bool = False,
        cancel_token: Optional[CancellationToken] = None
    ) -> MigrationProgress:
        progress = MigrationProgress(dry_run=dry_run)
        units = await self.enumerate_units(config, progress)
        progress.total_units = len(units)
        progress.total_size = sum(unit.size for unit in units)
        for unit in units:
            progress.add_category(unit.category)

        logger.info(
            f"{self.worker_type}: {progress.total_units} units, {progress.total_size} {progress.size_unit}"
            f"{' (dry run)' if dry_run else ''}"
        )

        if not dry_run:
            await self.process_units(config, units, progress, cancel_token)

        progress.finished_at = datetime.utcnow()
        return progress

    async def process_units(
        self,
        config: WorkerConfig,
        units: Sequence[MigrationUnit],
        progress: MigrationProgress,
        cancel_token: Optional[CancellationToken] = None
    ):
        """Run units through the batch executor, ``batch_size`` at a time."""
        self._report(progress)
        for start in range(0, len(units), config.batch_size):
            if cancel_token is not None and cancel_token.cancelled:
                progress.cancelled = True
                progress.not_attempted += len(units) - start
                break

            chunk = units[start:start + config.batch_size]
            batch = await self.executor.run(
                chunk,
                functools.partial(self.migrate_unit, config),
                concurrency=config.concurrency,
                timeout=config.unit_timeout_seconds,
                cancel_token=cancel_token,
                on_result=lambda outcome: self._count_outcome(progress, outcome),
            )
            progress.apply_batch(batch)
            self.reporter.record_operations(
                succeeded=batch.succeeded,
                failed=batch.failed,
                bytes_moved=sum(o.value.bytes_moved for o in batch.outcomes if o.ok and o.value),
                elapsed=batch.duration,
            )
            self._report(progress)

    def _count_outcome(self, progress: MigrationProgress, outcome: UnitOutcome):
        if not outcome.ok:
            return
        progress.migrated_units += 1
        progress.migrated_size += outcome.unit.size
        if outcome.value is not None and outcome.value.unchanged:
            progress.unchanged_units += 1

    def _report(self, progress: MigrationProgress):
        self.reporter.report(
            self.progress_key,
            progress.percent,
            dict(progress.to_metadata(self.worker_type)),
        )

    async def rollback_or_skip(
        self,
        config: WorkerConfig,
        progress: MigrationProgress,
        verification: Optional[VerificationResult] = None
    ) -> RollbackReport:
        """Default policy: leave the source untouched and allow a re-run."""
        if progress.failed_units:
            message = f"{progress.failed_units} units failed; source left untouched, re-run to retry them"
        else:
            message = "Source left untouched"
        return RollbackReport(
            action="skip",
            source_untouched=True,
            failed_units=progress.failed_units,
            message=message,
        )


@dataclass
class BoundWorker:
    """A worker paired with the config it runs with."""
    worker: MigrationWorker
    config: WorkerConfig
