"""
Bounded-concurrency batch executor.

Runs a unit function over a list of migration units. Coroutine
functions are awaited on the loop and plain functions run in a worker
thread. Every unit's failure or timeout is recorded in the
BatchResult; nothing a unit raises escapes ``run``.
"""

import asyncio
import inspect
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

from migration_engine.core.exceptions import UnitFailure

logger = logging.getLogger(__name__)

U = TypeVar("U")


class CancellationToken:
    """Shared cancellation flag, checked by the executor between units."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class UnitOutcome(Generic[U]):
    """Result of applying the unit function to one unit."""
    unit: U
    ok: bool
    value: Any = None
    failure: Optional[UnitFailure] = None
    elapsed: float = 0.0


@dataclass
class BatchResult:
    """Collected outcomes of one batch."""
    succeeded: int = 0
    failed: int = 0
    errors: List[UnitFailure] = field(default_factory=list)
    outcomes: List[UnitOutcome] = field(default_factory=list)
    not_attempted: int = 0
    cancelled: bool = False
    duration: float = 0.0

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    @property
    def timeouts(self) -> int:
        return sum(1 for error in self.errors if error.timeout)

    def record(self, outcome: UnitOutcome):
        self.outcomes.append(outcome)
        if outcome.ok:
            self.succeeded += 1
        else:
            self.failed += 1
            self.errors.append(outcome.failure)

    def merge(self, other: "BatchResult") -> "BatchResult":
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.errors.extend(other.errors)
        self.outcomes.extend(other.outcomes)
        self.not_attempted += other.not_attempted
        self.cancelled = self.cancelled or other.cancelled
        self.duration += other.duration
        return self


def unit_id_of(unit: Any) -> str:
    return str(getattr(unit, "id", unit))


class BatchExecutor:
    """
    Processes units with at most ``concurrency`` in flight.

    Args:
        concurrency: Default number of units processed in parallel
        unit_timeout: Default per-unit timeout in seconds (None disables)
    """

    def __init__(self, concurrency: int = 50, unit_timeout: Optional[float] = 30.0):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.unit_timeout = unit_timeout

    async def run(
        self,
        units: Sequence[U],
        fn: Callable[[U], Any],
        concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_result: Optional[Callable[[UnitOutcome], None]] = None
    ) -> BatchResult:
        """
        Apply ``fn`` to every unit.

        Args:
            units: Units to process, in order of scheduling
            fn: Async or plain unit function
            concurrency: Overrides the executor default for this batch
            timeout: Overrides the executor's per-unit timeout
            cancel_token: Stops scheduling new units once cancelled
            on_result: Called after each unit completes

        Returns:
            BatchResult with counts, failures and per-unit outcomes
        """
        result = BatchResult()
        limit = concurrency or self.concurrency
        unit_timeout = timeout if timeout is not None else self.unit_timeout
        queue = iter(units)
        started = time.monotonic()

        async def worker():
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    return
                try:
                    unit = next(queue)
                except StopIteration:
                    return
                outcome = await self._apply(unit, fn, unit_timeout)
                result.record(outcome)
                if on_result:
                    try:
                        on_result(outcome)
                    except Exception as e:
                        logger.warning(f"Batch result callback failed: {e}")

        workers = [worker() for _ in range(min(limit, len(units)))]
        if workers:
            await asyncio.gather(*workers)

        result.not_attempted = len(units) - result.attempted
        result.cancelled = bool(cancel_token and cancel_token.cancelled and result.not_attempted)
        result.duration = time.monotonic() - started

        if result.cancelled:
            logger.warning(
                f"Batch cancelled ({cancel_token.reason or 'no reason given'}): "
                f"{result.not_attempted} of {len(units)} units not scheduled"
            )
        elif result.failed:
            logger.info(f"Batch finished with {result.failed} failed of {len(units)} units")

        return result

    async def _apply(self, unit: U, fn: Callable[[U], Any], timeout: Optional[float]) -> UnitOutcome:
        start = time.monotonic()
        unit_id = unit_id_of(unit)
        try:
            if timeout:
                value = await asyncio.wait_for(self._call(fn, unit), timeout=timeout)
            else:
                value = await self._call(fn, unit)
            return UnitOutcome(unit=unit, ok=True, value=value, elapsed=time.monotonic() - start)
        except asyncio.TimeoutError:
            failure = UnitFailure(
                unit_id, f"timed out after {timeout}s", timeout=True, error_type="TimeoutError"
            )
        except Exception as e:
            failure = UnitFailure(unit_id, str(e) or type(e).__name__, error_type=type(e).__name__)

        logger.debug(f"Unit {unit_id} failed: {failure.message}")
        return UnitOutcome(unit=unit, ok=False, failure=failure, elapsed=time.monotonic() - start)

    @staticmethod
    async def _call(fn: Callable[[U], Any], unit: U) -> Any:
        if inspect.iscoroutinefunction(fn):
            return await fn(unit)
        value = await asyncio.to_thread(fn, unit)
        if inspect.isawaitable(value):
            value = await value
        return value
