"""
Relational data worker: copies table rows in foreign-key order.

Tables are processed one at a time, referenced tables first. Rows are
paged by a stable key column in fixed-size batches; each batch is one
migration unit applied with insert-if-absent semantics.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from migration_engine.core.exceptions import ConfigurationError
from migration_engine.models.config import ExistingTablePolicy, RelationalMigrationConfig
from migration_engine.workers.base import MigrationProgress, MigrationUnit, MigrationWorker, UnitApplied
from migration_engine.workers.batch import CancellationToken
from migration_engine.workers.verification import VerificationResult, checksum

logger = logging.getLogger(__name__)


class RelationalStore(Protocol):
    """Relational store collaborator."""

    def count(self, table: str) -> int:
        ...

    def page_rows(self, table: str, cursor: Any, size: int, key_column: str = "id") -> List[Dict[str, Any]]:
        """Rows with key greater than ``cursor`` (all rows when None), ordered by key."""
        ...

    def upsert(self, table: str, rows: Sequence[Dict[str, Any]], key_column: str = "id") -> int:
        """Insert rows whose key is absent. Returns the number inserted."""
        ...

    def tables_in_dependency_order(self) -> List[str]:
        ...


@dataclass(frozen=True)
class RowBatch:
    table: str
    key_column: str
    rows: Tuple[Dict[str, Any], ...]


class RelationalWorker(MigrationWorker):
    """
    Table-by-table row migration.

    A destination table that already holds rows is skipped and reported
    unless ``existing_table_policy`` is ``resume``, in which case rows
    are re-applied with insert-if-absent.
    """

    worker_type = "relational"

    def __init__(self, source: RelationalStore, destination: RelationalStore, **kwargs):
        super().__init__(**kwargs)
        self.source = source
        self.destination = destination

    async def select_tables(self, config: RelationalMigrationConfig) -> List[str]:
        ordered = await asyncio.to_thread(self.source.tables_in_dependency_order)
        if config.tables is not None:
            unknown = sorted(set(config.tables) - set(ordered))
            if unknown:
                raise ConfigurationError(
                    f"Unknown tables: {', '.join(unknown)}",
                    details={"tables": unknown}
                )
            wanted = set(config.tables)
            ordered = [table for table in ordered if table in wanted]
        excluded = set(config.exclude_tables)
        return [table for table in ordered if table not in excluded]

    async def enumerate_units(
        self,
        config: RelationalMigrationConfig,
        progress: MigrationProgress
    ) -> List[MigrationUnit]:
        progress.size_unit = "rows"
        units = []
        for table in await self.select_tables(config):
            source_rows = await asyncio.to_thread(self.source.count, table)
            destination_rows = await asyncio.to_thread(self.destination.count, table)

            if destination_rows > 0 and config.existing_table_policy == ExistingTablePolicy.SKIP:
                logger.warning(
                    f"Skipping table {table}: destination already has {destination_rows} rows"
                )
                progress.skipped.append(table)
                continue

            for index, start in enumerate(range(0, source_rows, config.batch_size)):
                units.append(MigrationUnit(
                    id=f"{table}#{index}",
                    size=min(config.batch_size, source_rows - start),
                    category=table,
                ))
        return units

    async def process_units(
        self,
        config: RelationalMigrationConfig,
        units: Sequence[MigrationUnit],
        progress: MigrationProgress,
        cancel_token: Optional[CancellationToken] = None
    ):
        """Page each table from the source and apply the pages in windows."""
        self._report(progress)
        tables: List[str] = []
        for unit in units:
            if unit.category not in tables:
                tables.append(unit.category)

        for index, table in enumerate(tables):
            if cancel_token is not None and cancel_token.cancelled:
                progress.cancelled = True
                progress.not_attempted += sum(1 for u in units if u.category in tables[index:])
                break
            logger.info(f"Migrating table {table}")
            await self._migrate_table(config, table, progress, cancel_token)

    async def _migrate_table(
        self,
        config: RelationalMigrationConfig,
        table: str,
        progress: MigrationProgress,
        cancel_token: Optional[CancellationToken]
    ):
        key_column = config.key_column(table)
        window = config.concurrency or self.executor.concurrency
        cursor = None
        batch_index = 0
        exhausted = False

        while not exhausted:
            pages: List[MigrationUnit] = []
            while len(pages) < window:
                rows = await asyncio.to_thread(
                    self.source.page_rows, table, cursor, config.batch_size, key_column
                )
                if rows:
                    pages.append(MigrationUnit(
                        id=f"{table}#{batch_index}",
                        size=len(rows),
                        category=table,
                        source_ref=RowBatch(table=table, key_column=key_column, rows=tuple(rows)),
                    ))
                    batch_index += 1
                    cursor = rows[-1][key_column]
                if len(rows) < config.batch_size:
                    exhausted = True
                    break

            if not pages:
                break

            batch = await self.executor.run(
                pages,
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
                elapsed=batch.duration,
            )
            self._report(progress)
            if batch.cancelled:
                progress.cancelled = True
                break

    async def migrate_unit(self, config: RelationalMigrationConfig, unit: MigrationUnit) -> UnitApplied:
        batch: RowBatch = unit.source_ref
        inserted = await asyncio.to_thread(
            self.destination.upsert, batch.table, list(batch.rows), batch.key_column
        )
        return UnitApplied(unchanged=inserted == 0)

    async def verify(self, config: RelationalMigrationConfig, full: bool = False) -> VerificationResult:
        result = VerificationResult(full=full)
        for table in await self.select_tables(config):
            source_count, destination_count = await asyncio.gather(
                asyncio.to_thread(self.source.count, table),
                asyncio.to_thread(self.destination.count, table),
            )
            result.compare(
                f"row_count:{table}",
                source_count,
                destination_count,
                message=f"{table}: {source_count} source rows, {destination_count} destination rows",
            )

            key_column = config.key_column(table)
            if full or table in config.full_diff_tables:
                await self._diff_table(result, table, key_column, config.batch_size)
            elif config.sample_size:
                source_rows, destination_rows = await asyncio.gather(
                    asyncio.to_thread(self.source.page_rows, table, None, config.sample_size, key_column),
                    asyncio.to_thread(self.destination.page_rows, table, None, config.sample_size, key_column),
                )
                result.compare(
                    f"sample_checksum:{table}",
                    checksum(source_rows),
                    checksum(destination_rows),
                    message=f"{table}: sample checksum differs",
                )
                result.sampled += len(source_rows)

        logger.info(f"Relational verification: {result.summary()}")
        return result

    async def _diff_table(self, result: VerificationResult, table: str, key_column: str, page_size: int):
        source_rows = await self._row_checksums(self.source, table, key_column, page_size)
        destination_rows = await self._row_checksums(self.destination, table, key_column, page_size)
        missing = [key for key in source_rows if key not in destination_rows]
        different = [
            key for key, digest in source_rows.items()
            if key in destination_rows and destination_rows[key] != digest
        ]
        result.compare(f"missing_rows:{table}", [], missing[:20], message=f"{table}: {len(missing)} rows missing")
        result.compare(
            f"row_diff:{table}", [], different[:20], message=f"{table}: {len(different)} rows differ"
        )
        result.sampled += len(source_rows)

    async def _row_checksums(self, store: RelationalStore, table: str, key_column: str, page_size: int) -> Dict[Any, str]:
        checksums: Dict[Any, str] = {}
        cursor = None
        while True:
            rows = await asyncio.to_thread(store.page_rows, table, cursor, page_size, key_column)
            for row in rows:
                checksums[row[key_column]] = checksum(row)
            if len(rows) < page_size:
                return checksums
            cursor = rows[-1][key_column]
