"""
Object storage worker: copies objects from one bucket to another.

A unit is one object key. Copying is overwrite-by-key, and an object
whose destination copy already matches in size and ETag is left alone,
so re-running over a partially migrated bucket is safe.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from migration_engine.core.exceptions import UnitIntegrityError
from migration_engine.models.config import ObjectStorageMigrationConfig
from migration_engine.workers.base import (
    MigrationProgress,
    MigrationUnit,
    MigrationWorker,
    RollbackReport,
    UnitApplied,
)
from migration_engine.workers.verification import VerificationCheck, VerificationResult, choose_sample

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectMeta:
    """Listing/head information for one object."""
    key: str
    size: int
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None


class ObjectStore(Protocol):
    """Object store collaborator."""

    def list(self, bucket: str, prefix: str = "") -> List[ObjectMeta]:
        ...

    def copy(self, src_bucket: str, src_key: str, dst_bucket: str, dst_key: str,
             preserve_metadata: bool = True) -> None:
        ...

    def head(self, bucket: str, key: str) -> Optional[ObjectMeta]:
        ...

    def presign(self, bucket: str, key: str, expires_in: int = 3600) -> str:
        ...

    def delete(self, bucket: str, key: str) -> None:
        ...


def object_category(key: str, prefix: str = "") -> str:
    """Top-level folder of ``key`` below ``prefix``."""
    relative = key[len(prefix):] if prefix and key.startswith(prefix) else key
    relative = relative.lstrip("/")
    return relative.split("/", 1)[0] if "/" in relative else "root"


def _same_object(source: ObjectMeta, destination: Optional[ObjectMeta]) -> bool:
    if destination is None or destination.size != source.size:
        return False
    if source.etag and destination.etag and "-" not in source.etag and "-" not in destination.etag:
        # Multipart ETags are not content hashes and change on copy
        return source.etag.strip('"') == destination.etag.strip('"')
    return True


class ObjectStorageWorker(MigrationWorker):
    """
    Bucket-to-bucket object migration.

    Args:
        source: Store holding the source bucket
        destination: Store holding the destination bucket. Defaults to
            ``source`` for same-account copies.
    """

    worker_type = "object_storage"

    def __init__(self, source: ObjectStore, destination: Optional[ObjectStore] = None, **kwargs):
        super().__init__(**kwargs)
        self.source = source
        self.destination = destination or source

    async def enumerate_units(
        self,
        config: ObjectStorageMigrationConfig,
        progress: MigrationProgress
    ) -> List[MigrationUnit]:
        objects = await asyncio.to_thread(self.source.list, config.source_bucket, config.prefix)
        units = []
        for obj in objects:
            if obj.key.endswith("/") and obj.size == 0:
                # Folder placeholder
                continue
            units.append(MigrationUnit(
                id=obj.key,
                size=obj.size,
                category=object_category(obj.key, config.prefix),
                source_ref=obj,
            ))
        return units

    async def migrate_unit(self, config: ObjectStorageMigrationConfig, unit: MigrationUnit) -> UnitApplied:
        source_meta: ObjectMeta = unit.source_ref
        existing = await asyncio.to_thread(self.destination.head, config.destination_bucket, unit.id)
        if _same_object(source_meta, existing):
            return UnitApplied(bytes_moved=0, unchanged=True)

        await asyncio.to_thread(
            self.destination.copy,
            config.source_bucket,
            unit.id,
            config.destination_bucket,
            unit.id,
            config.preserve_metadata,
        )

        if config.verify_integrity:
            copied = await asyncio.to_thread(self.destination.head, config.destination_bucket, unit.id)
            if not _same_object(source_meta, copied):
                raise UnitIntegrityError(
                    f"Copied object {unit.id} does not match source",
                    details={
                        "expected_size": source_meta.size,
                        "actual_size": copied.size if copied else None,
                    }
                )

        return UnitApplied(bytes_moved=unit.size)

    async def verify(self, config: ObjectStorageMigrationConfig, full: bool = False) -> VerificationResult:
        source_objects, destination_objects = await asyncio.gather(
            asyncio.to_thread(self.source.list, config.source_bucket, config.prefix),
            asyncio.to_thread(self.destination.list, config.destination_bucket, config.prefix),
        )
        source_objects = [o for o in source_objects if not (o.key.endswith("/") and o.size == 0)]
        destination_by_key: Dict[str, ObjectMeta] = {o.key: o for o in destination_objects}

        result = VerificationResult(full=full)
        present = [o for o in source_objects if o.key in destination_by_key]
        result.compare(
            "object_count",
            len(source_objects),
            len(present),
            message=f"{len(source_objects) - len(present)} of {len(source_objects)} objects missing from destination",
        )
        if full:
            result.compare(
                "total_size",
                sum(o.size for o in source_objects),
                sum(destination_by_key[o.key].size for o in present),
            )

        sample = choose_sample(source_objects, None if full else config.sample_size)
        result.sampled = len(sample)
        mismatched = []
        for source_meta in sample:
            destination_meta = destination_by_key.get(source_meta.key)
            if destination_meta is None:
                continue
            if not _same_object(source_meta, destination_meta):
                mismatched.append(source_meta.key)
                result.add(VerificationCheck(
                    name=f"checksum:{source_meta.key}",
                    passed=False,
                    expected={"size": source_meta.size, "etag": source_meta.etag},
                    actual={"size": destination_meta.size, "etag": destination_meta.etag},
                    message=f"{source_meta.key}: size or checksum differs",
                ))

        for key in mismatched[:10]:
            url = await asyncio.to_thread(self.source.presign, config.source_bucket, key)
            result.warnings.append(f"Review source object {key}: {url}")

        logger.info(f"Object storage verification: {result.summary()}")
        return result

    async def rollback_or_skip(
        self,
        config: ObjectStorageMigrationConfig,
        progress: MigrationProgress,
        verification: Optional[VerificationResult] = None
    ) -> RollbackReport:
        """
        Delete migrated source objects only when ``delete_source`` is set,
        the run had no failures and verification passed. Otherwise the
        source is left untouched. Only objects whose destination copy
        still matches are deleted.
        """
        can_delete = (
            config.delete_source
            and not progress.dry_run
            and progress.is_successful
            and verification is not None
            and verification.passed
        )
        if not can_delete:
            report = await super().rollback_or_skip(config, progress, verification)
            if config.delete_source:
                report.message = f"{report.message}; source deletion skipped"
            return report

        units = await self.enumerate_units(config, MigrationProgress())

        async def delete_if_migrated(unit: MigrationUnit) -> bool:
            copied = await asyncio.to_thread(self.destination.head, config.destination_bucket, unit.id)
            if not _same_object(unit.source_ref, copied):
                # Written or changed after the copy
                return False
            await asyncio.to_thread(self.source.delete, config.source_bucket, unit.id)
            return True

        batch = await self.executor.run(
            units,
            delete_if_migrated,
            concurrency=config.concurrency,
            timeout=config.unit_timeout_seconds,
        )
        for error in batch.errors:
            logger.warning(f"Failed to delete source object {error.unit_id}: {error.message}")

        deleted = sum(1 for outcome in batch.outcomes if outcome.ok and outcome.value)
        kept = [outcome.unit.id for outcome in batch.outcomes if outcome.ok and not outcome.value]
        if kept:
            logger.warning(f"Kept {len(kept)} source objects with no matching destination copy: {kept[:10]}")

        return RollbackReport(
            action="source_cleanup",
            source_untouched=deleted == 0,
            failed_units=batch.failed,
            deleted_units=deleted,
            rerun_allowed=True,
            message=f"Deleted {deleted} source objects ({batch.failed} failed, {len(kept)} kept)",
        )
