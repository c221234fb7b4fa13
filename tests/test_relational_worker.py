"""
Tests for the relational data worker.
"""

import pytest

from migration_engine.core.exceptions import ConfigurationError
from migration_engine.models.config import ExistingTablePolicy, RelationalMigrationConfig
from migration_engine.workers.relational import RelationalWorker


def rows(count, **extra):
    return [{"id": i, "value": f"row-{i}", **extra} for i in range(1, count + 1)]


@pytest.fixture
def stores(relational_stores):
    """users <- orders <- order_items, plus an unrelated audit table."""
    source, destination = relational_stores
    source.create_table("order_items", rows(30), depends_on=["orders"])
    source.create_table("audit", rows(5))
    source.create_table("orders", rows(20), depends_on=["users"])
    source.create_table("users", rows(10))
    for name, deps in (("order_items", ["orders"]), ("audit", []), ("orders", ["users"]), ("users", [])):
        destination.create_table(name, depends_on=deps)
    return source, destination


@pytest.fixture
def worker(stores, executor, reporter):
    source, destination = stores
    return RelationalWorker(source, destination, executor=executor, reporter=reporter)


def tables_written(destination):
    order = []
    for table, _ in destination.write_log:
        if table not in order:
            order.append(table)
    return order


class TestRelationalExecute:
    """Copying rows table by table."""

    @pytest.mark.asyncio
    async def test_copies_all_rows_in_foreign_key_order(self, worker, stores, reporter):
        source, destination = stores

        progress = await worker.execute(RelationalMigrationConfig(batch_size=7))

        assert progress.is_successful
        assert progress.size_unit == "rows"
        assert progress.total_size == 65
        assert progress.migrated_size == 65
        for table in source.tables:
            assert destination.tables[table] == source.tables[table]

        order = tables_written(destination)
        assert order.index("users") < order.index("orders") < order.index("order_items")
        assert reporter.reports[-1][2]["rows_migrated"] == 65
        assert "bytes_migrated" not in reporter.reports[-1][2]

    @pytest.mark.asyncio
    async def test_batches_are_units(self, worker):
        progress = await worker.execute(RelationalMigrationConfig(batch_size=7, tables=["orders"]), dry_run=True)

        # 20 rows in pages of 7
        assert progress.total_units == 3
        assert progress.categories == {"orders": 3}

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, worker, stores):
        _, destination = stores

        progress = await worker.execute(RelationalMigrationConfig(), dry_run=True)

        assert progress.total_size == 65
        assert destination.write_log == []

    @pytest.mark.asyncio
    async def test_non_empty_destination_table_is_skipped(self, worker, stores):
        _, destination = stores
        destination.tables["orders"][999] = {"id": 999, "value": "existing"}

        progress = await worker.execute(RelationalMigrationConfig())

        assert progress.skipped == ["orders"]
        assert progress.failed_units == 0
        assert "orders" not in tables_written(destination)
        assert len(destination.tables["orders"]) == 1
        assert len(destination.tables["order_items"]) == 30

    @pytest.mark.asyncio
    async def test_resume_policy_fills_partial_table(self, worker, stores):
        source, destination = stores
        for row in rows(8):
            destination.tables["orders"][row["id"]] = dict(row)
        config = RelationalMigrationConfig(
            batch_size=5,
            tables=["orders"],
            existing_table_policy=ExistingTablePolicy.RESUME,
        )

        progress = await worker.execute(config)

        assert progress.skipped == []
        assert destination.tables["orders"] == source.tables["orders"]
        assert sum(inserted for table, inserted in destination.write_log) == 12
        # Only the first page (rows 1-5) is entirely present already
        assert progress.unchanged_units == 1

    @pytest.mark.asyncio
    async def test_table_selection(self, worker, stores):
        _, destination = stores

        await worker.execute(RelationalMigrationConfig(exclude_tables=["audit", "order_items"]))

        assert tables_written(destination) == ["users", "orders"]

    @pytest.mark.asyncio
    async def test_unknown_table_is_a_configuration_error(self, worker):
        with pytest.raises(ConfigurationError, match="Unknown tables: nope"):
            await worker.execute(RelationalMigrationConfig(tables=["users", "nope"]))

    @pytest.mark.asyncio
    async def test_failed_table_writes_are_counted(self, worker, stores):
        _, destination = stores
        destination.fail_tables = {"audit"}

        progress = await worker.execute(RelationalMigrationConfig(batch_size=2))

        # audit has 5 rows in pages of 2
        assert progress.failed_units == 3
        assert not progress.is_successful
        assert destination.tables["users"]

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, worker, stores):
        _, destination = stores
        config = RelationalMigrationConfig(existing_table_policy=ExistingTablePolicy.RESUME)
        await worker.execute(config)

        progress = await worker.execute(config)

        assert progress.unchanged_units == progress.total_units
        assert len(destination.tables["orders"]) == 20

    def test_circular_foreign_keys(self, relational_stores):
        source, _ = relational_stores
        source.create_table("a", depends_on=["b"])
        source.create_table("b", depends_on=["a"])
        with pytest.raises(ConfigurationError, match="Circular foreign keys"):
            source.tables_in_dependency_order()


class TestRelationalVerify:
    """Row counts, sampled checksums and full diffs."""

    @pytest.mark.asyncio
    async def test_verify_passes_after_copy(self, worker):
        config = RelationalMigrationConfig()
        await worker.execute(config)

        result = await worker.verify(config)

        assert result.passed
        assert {check.name for check in result.checks} >= {"row_count:users", "sample_checksum:users"}

    @pytest.mark.asyncio
    async def test_count_mismatch(self, worker, stores):
        _, destination = stores
        config = RelationalMigrationConfig()
        await worker.execute(config)
        del destination.tables["users"][4]

        result = await worker.verify(config)

        assert not result.passed
        assert "users: 10 source rows, 9 destination rows" in result.mismatches

    @pytest.mark.asyncio
    async def test_full_diff_finds_changed_rows(self, worker, stores):
        _, destination = stores
        config = RelationalMigrationConfig(full_diff_tables=["orders"])
        await worker.execute(config)
        destination.tables["orders"][3]["value"] = "tampered"

        result = await worker.verify(config)

        assert not result.passed
        diff = next(check for check in result.checks if check.name == "row_diff:orders")
        assert diff.actual == [3]
        assert "orders: 1 rows differ" in result.mismatches

    @pytest.mark.asyncio
    async def test_full_verification_diffs_every_table(self, worker):
        config = RelationalMigrationConfig()
        await worker.execute(config)

        result = await worker.verify(config, full=True)

        assert result.passed
        assert result.sampled == 65
        assert not any(check.name.startswith("sample_checksum") for check in result.checks)
