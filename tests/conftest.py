"""
Pytest configuration and fixtures for the Migration Engine tests.

Provides phase lists, trackers backed by an in-memory store, in-memory
collaborators for the data-plane workers and a recording progress
reporter.
"""

from typing import Any, Dict, List, Optional, Tuple

import pytest

from migration_engine.adapters.memory import InMemoryCacheStore, InMemoryObjectStore, InMemoryRelationalStore
from migration_engine.models.config import EngineSettings
from migration_engine.models.phase import MigrationPhase, SubTask
from migration_engine.monitoring.progress_tracker import ProgressTracker
from migration_engine.persistence.store import InMemoryRunStore
from migration_engine.workers.batch import BatchExecutor


class RecordingReporter:
    """ProgressReporter that keeps everything it is told."""

    def __init__(self):
        self.reports: List[Tuple[str, float, Dict[str, Any]]] = []
        self.operations: List[Dict[str, Any]] = []

    def report(self, phase_id: str, percent: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.reports.append((phase_id, percent, dict(metadata or {})))

    def record_operations(self, succeeded: int = 0, failed: int = 0, bytes_moved: int = 0, elapsed: float = 0.0) -> None:
        self.operations.append({
            "succeeded": succeeded,
            "failed": failed,
            "bytes_moved": bytes_moved,
            "elapsed": elapsed,
        })

    @property
    def last_percent(self) -> Optional[float]:
        return self.reports[-1][1] if self.reports else None


def make_phase(phase_id: str, dependencies=(), sub_tasks=(), estimated_duration_minutes: float = 10.0) -> MigrationPhase:
    return MigrationPhase(
        id=phase_id,
        name=f"Phase {phase_id}",
        dependencies=list(dependencies),
        sub_tasks=[SubTask(id=st, name=f"Sub-task {st}") for st in sub_tasks],
        estimated_duration_minutes=estimated_duration_minutes,
    )


@pytest.fixture
def phase_factory():
    """Build MigrationPhase objects with sensible defaults."""
    return make_phase


@pytest.fixture
def abc_phases() -> List[MigrationPhase]:
    """A with no dependencies, B and C depending on A."""
    return [
        make_phase("A"),
        make_phase("B", dependencies=["A"]),
        make_phase("C", dependencies=["A"]),
    ]


@pytest.fixture
def settings() -> EngineSettings:
    """Settings that persist every change."""
    return EngineSettings(persist_interval_seconds=0, alert_capacity=100)


@pytest.fixture
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def tracker(settings, run_store) -> ProgressTracker:
    """Uninitialized tracker backed by an in-memory store."""
    return ProgressTracker(store=run_store, settings=settings)


@pytest.fixture
def abc_tracker(tracker, abc_phases) -> ProgressTracker:
    tracker.initialize_migration("mig-abc", abc_phases)
    return tracker


@pytest.fixture
def executor() -> BatchExecutor:
    return BatchExecutor(concurrency=10, unit_timeout=5.0)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def cache_store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def relational_stores() -> Tuple[InMemoryRelationalStore, InMemoryRelationalStore]:
    """Source and destination relational stores."""
    return InMemoryRelationalStore(), InMemoryRelationalStore()
