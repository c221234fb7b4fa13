"""
Tests for the bounded-concurrency batch executor.
"""

import asyncio
import functools
import threading

import pytest

from migration_engine.core.exceptions import UnitFailure
from migration_engine.workers.batch import BatchExecutor, BatchResult, CancellationToken


class TestBatchExecutor:
    """Failure isolation, timeouts, cancellation and the concurrency bound."""

    @pytest.mark.asyncio
    async def test_unit_failures_do_not_abort_batch(self, executor):
        failing = set(range(0, 100, 10))

        async def fn(unit):
            if unit in failing:
                raise RuntimeError(f"unit {unit} exploded")
            return unit * 2

        result = await executor.run(list(range(100)), fn)

        assert result.succeeded == 90
        assert result.failed == 10
        assert result.not_attempted == 0
        assert not result.cancelled
        assert sorted(error.unit_id for error in result.errors) == sorted(str(u) for u in failing)
        assert all(error.error_type == "RuntimeError" for error in result.errors)

    @pytest.mark.asyncio
    async def test_timeout_is_recorded_as_unit_failure(self):
        executor = BatchExecutor(concurrency=4, unit_timeout=0.05)

        async def fn(unit):
            if unit == "slow":
                await asyncio.sleep(1)
            return unit

        result = await executor.run(["a", "slow", "b"], fn)

        assert result.succeeded == 2
        assert result.timeouts == 1
        failure = result.errors[0]
        assert failure == UnitFailure("slow", "timed out after 0.05s", timeout=True)
        assert str(failure).startswith("slow: timeout")

    @pytest.mark.asyncio
    async def test_per_call_timeout_overrides_default(self):
        executor = BatchExecutor(concurrency=2, unit_timeout=0.01)

        async def fn(unit):
            await asyncio.sleep(0.05)
            return unit

        result = await executor.run([1, 2], fn, timeout=5.0)
        assert result.succeeded == 2

    @pytest.mark.asyncio
    async def test_cancellation_stops_scheduling(self):
        executor = BatchExecutor(concurrency=1, unit_timeout=None)
        token = CancellationToken()

        async def fn(unit):
            return unit

        def on_result(outcome):
            if outcome.unit == 9:
                token.cancel("operator request")

        result = await executor.run(list(range(100)), fn, cancel_token=token, on_result=on_result)

        assert result.attempted == 10
        assert result.not_attempted == 90
        assert result.cancelled
        assert token.reason == "operator request"

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, executor):
        token = CancellationToken()
        token.cancel()

        async def fn(unit):
            return unit

        result = await executor.run([1, 2, 3], fn, cancel_token=token)
        assert result.attempted == 0
        assert result.not_attempted == 3
        assert result.cancelled

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        executor = BatchExecutor(concurrency=3, unit_timeout=None)
        in_flight = 0
        peak = 0

        async def fn(unit):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        result = await executor.run(list(range(20)), fn)

        assert result.succeeded == 20
        assert peak == 3

    @pytest.mark.asyncio
    async def test_callback_errors_are_swallowed(self, executor):
        async def fn(unit):
            return unit

        def on_result(outcome):
            raise ValueError("callback broke")

        result = await executor.run([1, 2, 3], fn, on_result=on_result)
        assert result.succeeded == 3

    @pytest.mark.asyncio
    async def test_empty_batch(self, executor):
        async def fn(unit):
            return unit

        result = await executor.run([], fn)
        assert result.attempted == 0
        assert not result.cancelled

    @pytest.mark.asyncio
    async def test_plain_functions_run_off_the_loop(self, executor):
        loop_thread = threading.get_ident()
        seen_threads = []

        def fn(unit):
            seen_threads.append(threading.get_ident())
            if unit == 2:
                raise IOError("disk unplugged")
            return unit * 10

        result = await executor.run([1, 2, 3], fn)

        assert result.succeeded == 2
        assert result.failed == 1
        assert result.errors[0].unit_id == "2"
        assert result.errors[0].error_type == "OSError"
        assert sorted(o.value for o in result.outcomes if o.ok) == [10, 30]
        assert loop_thread not in seen_threads

    @pytest.mark.asyncio
    async def test_partial_of_coroutine_method_is_awaited(self, executor):
        class Copier:
            async def copy(self, prefix, unit):
                return f"{prefix}/{unit}"

        result = await executor.run(["a", "b"], functools.partial(Copier().copy, "dest"))

        assert sorted(o.value for o in result.outcomes) == ["dest/a", "dest/b"]

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            BatchExecutor(concurrency=0)

    def test_merge_results(self):
        first = BatchResult(succeeded=3, failed=1, errors=[UnitFailure("a", "boom")])
        second = BatchResult(succeeded=2, not_attempted=4, cancelled=True)

        merged = first.merge(second)

        assert merged.succeeded == 5
        assert merged.failed == 1
        assert merged.not_attempted == 4
        assert merged.cancelled
