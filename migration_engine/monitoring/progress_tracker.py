"""
Progress tracking for migration runs.

The ProgressTracker owns the MigrationRun: every phase and sub-task
transition, progress update, alert and metrics update goes through it.
State is guarded by a single re-entrant lock. Alert sinks, event
callbacks and persistence run after the lock is released.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from migration_engine.core.exceptions import (
    ConfigurationError,
    InvalidTransition,
    PhaseNotFoundError,
    SubTaskNotFoundError,
    VerificationFailure,
)
from migration_engine.core.phase_graph import PhaseGraph
from migration_engine.models.config import EngineSettings
from migration_engine.models.dashboard import Dashboard, DashboardOverview, PhaseCounts, ResourceUsagePoint
from migration_engine.models.phase import WORKER_METADATA_KEYS, MigrationPhase, PhaseAttempt, PhaseStatus, SubTask
from migration_engine.models.run import (
    Alert,
    AlertSeverity,
    MetricsSnapshot,
    MigrationRun,
    RunStatus,
)
from migration_engine.monitoring.alerts import AlertSink
from migration_engine.monitoring.dashboard import build_timeline
from migration_engine.monitoring.estimator import CompletionEstimator
from migration_engine.persistence.store import RunStore
from migration_engine.utils.logging import AuditLogger
from migration_engine.workers.batch import CancellationToken

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3
SPEED_WINDOW_SECONDS = 60.0
_NESTED_METRICS = ("resource_utilization", "cost_metrics")


class TrackerEventType(str, Enum):
    """Types of tracker events."""
    MIGRATION_INITIALIZED = "migration_initialized"
    MIGRATION_PAUSED = "migration_paused"
    MIGRATION_RESUMED = "migration_resumed"
    MIGRATION_COMPLETED = "migration_completed"
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETED = "phase_completed"
    PHASE_FAILED = "phase_failed"
    PHASE_SKIPPED = "phase_skipped"
    PHASE_RESET = "phase_reset"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_ACKNOWLEDGED = "verification_acknowledged"
    SUB_TASK_STARTED = "sub_task_started"
    SUB_TASK_COMPLETED = "sub_task_completed"
    SUB_TASK_FAILED = "sub_task_failed"
    SUB_TASK_SKIPPED = "sub_task_skipped"


@dataclass
class TrackerEvent:
    """A state transition recorded by the tracker."""
    event_type: TrackerEventType
    phase_id: Optional[str] = None
    sub_task_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Outbox:
    """Side effects collected under the lock and run after it is released."""
    alerts: List[Alert] = field(default_factory=list)
    events: List[TrackerEvent] = field(default_factory=list)
    snapshot: Optional[Tuple[int, MigrationRun]] = None


class ProgressTracker:
    """
    State machine and metrics store for one migration run.

    Args:
        store: Where run snapshots are saved. Transitions are saved
            immediately, progress and metrics at most every
            ``settings.persist_interval_seconds``.
        settings: Engine settings (alert capacity, history size, cost)
        alert_sinks: Sinks notified of every alert
        audit_logger: Receives one audit record per transition
        estimator: Used for the dashboard's estimated completion
    """

    def __init__(
        self,
        store: Optional[RunStore] = None,
        settings: Optional[EngineSettings] = None,
        alert_sinks: Optional[List[AlertSink]] = None,
        audit_logger: Optional[AuditLogger] = None,
        estimator: Optional[CompletionEstimator] = None,
        monotonic: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.settings = settings or EngineSettings()
        self.alert_sinks: List[AlertSink] = list(alert_sinks or [])
        self.audit_logger = audit_logger
        self.estimator = estimator or CompletionEstimator()
        self._monotonic = monotonic

        self._lock = threading.RLock()
        self._persist_lock = threading.Lock()
        self._run: Optional[MigrationRun] = None
        self._graph: Optional[PhaseGraph] = None
        self._alerts: Deque[Alert] = deque(maxlen=self.settings.alert_capacity)
        self._metrics_history: Deque[MetricsSnapshot] = deque(maxlen=self.settings.metrics_history_size)
        self._speed_samples: Deque[Tuple[float, float, int]] = deque()
        self._operation_time_total = 0.0
        self._callbacks: List[Callable[[TrackerEvent], None]] = []

        self._version = 0
        self._persisted_version = 0
        self._last_persist = 0.0

    # ------------------------------------------------------------------
    # Callbacks and sinks

    def add_callback(self, callback: Callable[[TrackerEvent], None]):
        """Add a callback invoked after every transition."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[TrackerEvent], None]):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def add_alert_sink(self, sink: AlertSink):
        self.alert_sinks.append(sink)

    # ------------------------------------------------------------------
    # Run lifecycle

    def initialize_migration(self, migration_id: str, phases: List[MigrationPhase]) -> MigrationRun:
        """
        Create the run from a list of phase definitions.

        Raises:
            ConfigurationError: Unknown dependency, duplicate id or cycle
            InvalidTransition: The tracker already holds a run
        """
        graph = PhaseGraph(phases)
        outbox = _Outbox()

        with self._lock:
            if self._run is not None:
                raise InvalidTransition(
                    "migration", self._run.status.value, "initialized",
                    reason=f"run {self._run.migration_id} already initialized"
                )
            self._graph = graph
            self._run = MigrationRun(
                migration_id=migration_id,
                phases=[phase.model_copy(deep=True) for phase in phases],
                alert_capacity=self.settings.alert_capacity,
            )
            self._recompute_overall_locked()
            self._alert_locked(outbox, AlertSeverity.INFO, f"Migration initialized with {len(phases)} phases")
            self._event_locked(outbox, TrackerEventType.MIGRATION_INITIALIZED, details={
                "phases": graph.phase_ids,
            })
            self._snapshot_locked(outbox, force=True)
            run = self._run.model_copy(deep=True)

        logger.info(f"Initialized migration {migration_id} with {len(phases)} phases")
        self._dispatch(outbox)
        return run

    def load_migration(self, migration_id: str) -> bool:
        """Resume a persisted run. Returns False when the store has none."""
        if self.store is None:
            return False
        run = self.store.load(migration_id)
        if run is None:
            return False

        graph = PhaseGraph(run.phases)
        with self._lock:
            if self._run is not None:
                raise InvalidTransition(
                    "migration", self._run.status.value, "loaded",
                    reason=f"run {self._run.migration_id} already loaded"
                )
            self._graph = graph
            self._run = run
            self._alerts.clear()
            self._alerts.extend(run.alerts)
            self._metrics_history.clear()
            self._metrics_history.extend(run.metrics_history)
            metrics = run.metrics
            self._operation_time_total = metrics.average_operation_time * (
                metrics.successful_operations + metrics.failed_operations
            )

        logger.info(f"Loaded migration {migration_id} ({run.status.value}, {run.overall_progress:.1f}%)")
        return True

    @property
    def is_initialized(self) -> bool:
        with self._lock:
            return self._run is not None

    @property
    def run(self) -> MigrationRun:
        """Deep copy of the current run."""
        with self._lock:
            return self._snapshot_run_locked()

    @property
    def migration_id(self) -> str:
        with self._lock:
            return self._require_run().migration_id

    @property
    def graph(self) -> PhaseGraph:
        with self._lock:
            self._require_run()
            return self._graph

    def get_phase(self, phase_id: str) -> MigrationPhase:
        with self._lock:
            return self._phase_locked(phase_id).model_copy(deep=True)

    def pause_migration(self, reason: Optional[str] = None):
        """Stop new phases and sub-tasks from starting. In-flight work continues."""
        outbox = _Outbox()
        with self._lock:
            run = self._require_run()
            if run.status not in (RunStatus.PENDING, RunStatus.IN_PROGRESS):
                raise InvalidTransition("migration", run.status.value, RunStatus.PAUSED.value)
            run.status = RunStatus.PAUSED
            message = "Migration paused" + (f": {reason}" if reason else "")
            self._alert_locked(outbox, AlertSeverity.WARNING, message)
            self._event_locked(outbox, TrackerEventType.MIGRATION_PAUSED, details={"reason": reason})
            self._snapshot_locked(outbox, force=True)
        self._dispatch(outbox)

    def resume_migration(self):
        outbox = _Outbox()
        with self._lock:
            run = self._require_run()
            if run.status != RunStatus.PAUSED:
                raise InvalidTransition("migration", run.status.value, RunStatus.IN_PROGRESS.value)
            run.status = RunStatus.PENDING
            self._refresh_run_status_locked(outbox)
            self._alert_locked(outbox, AlertSeverity.INFO, "Migration resumed")
            self._event_locked(outbox, TrackerEventType.MIGRATION_RESUMED)
            self._snapshot_locked(outbox, force=True)
        self._dispatch(outbox)

    # ------------------------------------------------------------------
    # Readiness

    def is_ready(self, phase_id: str) -> bool:
        with self._lock:
            self._require_run()
            return self._graph.is_ready(phase_id, self._statuses_locked())

    def next_ready_phases(self) -> List[str]:
        """Pending phases whose dependencies are all completed or skipped."""
        with self._lock:
            self._require_run()
            return self._graph.next_ready(self._statuses_locked())

    def blocked_phases(self) -> List[str]:
        """Pending phases that cannot become ready because an ancestor failed."""
        with self._lock:
            self._require_run()
            return self._graph.blocked_by_failure(self._statuses_locked())

    # ------------------------------------------------------------------
    # Phase transitions

    def start_phase(self, phase_id: str) -> MigrationPhase:
        outbox = _Outbox()
        with self._lock:
            run = self._require_run()
            phase = self._phase_locked(phase_id)
            if run.status == RunStatus.PAUSED:
                raise InvalidTransition(
                    f"phase {phase_id}", phase.status.value, PhaseStatus.IN_PROGRESS.value,
                    reason="migration is paused"
                )
            if phase.status != PhaseStatus.PENDING:
                raise InvalidTransition(f"phase {phase_id}", phase.status.value, PhaseStatus.IN_PROGRESS.value)

            statuses = self._statuses_locked()
            if not self._graph.is_ready(phase_id, statuses):
                waiting = [
                    dep for dep in phase.dependencies if not statuses[dep].satisfies_dependency
                ]
                raise InvalidTransition(
                    f"phase {phase_id}", phase.status.value, PhaseStatus.IN_PROGRESS.value,
                    reason=f"waiting on {', '.join(waiting)}"
                )

            phase.status = PhaseStatus.IN_PROGRESS
            phase.start_time = datetime.utcnow()
            phase.end_time = None
            self._refresh_run_status_locked(outbox)
            self._alert_locked(outbox, AlertSeverity.INFO, f"Phase started: {phase.name}", phase_id=phase_id)
            self._event_locked(outbox, TrackerEventType.PHASE_STARTED, phase_id, details={
                "attempt": phase.attempt_number,
            })
            self._snapshot_locked(outbox, force=True)
            result = phase.model_copy(deep=True)

        logger.info(f"Phase {phase_id} started")
        self._dispatch(outbox)
        return result

    def update_phase_progress(
        self,
        phase_id: str,
        progress: float,
        metadata: Optional[Dict[str, Any]] = None,
        complete_on_full: bool = True
    ) -> float:
        """
        Set a phase's progress and merge metadata into it.

        Progress is clamped to [0, 100]. A value below the current
        progress is ignored. Reaching 100 completes the phase unless
        ``complete_on_full`` is False or a failed verification is
        pending.

        Returns:
            The recomputed overall progress
        """
        outbox = _Outbox()
        with self._lock:
            phase = self._phase_locked(phase_id)
            if phase.status != PhaseStatus.IN_PROGRESS:
                raise InvalidTransition(
                    f"phase {phase_id}", phase.status.value, PhaseStatus.IN_PROGRESS.value,
                    reason="progress can only be reported for a running phase"
                )

            clamped = max(0.0, min(100.0, float(progress)))
            if clamped < phase.progress:
                logger.debug(f"Ignoring progress regression on {phase_id}: {phase.progress} -> {clamped}")
            else:
                phase.progress = clamped
            if metadata:
                phase.metadata.update(metadata)

            overall = self._recompute_overall_locked()
            completed = False
            if phase.progress >= 100.0 and complete_on_full and not self._verification_blocked(phase):
                self._complete_locked(outbox, phase)
                completed = True
            self._snapshot_locked(outbox, force=completed)

        self._dispatch(outbox)
        return overall

    def complete_phase(self, phase_id: str) -> List[str]:
        """
        Mark a running phase completed.

        Returns:
            The phases that are ready to start now

        Raises:
            VerificationFailure: The phase's verification failed and has
                not been acknowledged
        """
        outbox = _Outbox()
        with self._lock:
            phase = self._phase_locked(phase_id)
            if phase.status != PhaseStatus.IN_PROGRESS:
                raise InvalidTransition(f"phase {phase_id}", phase.status.value, PhaseStatus.COMPLETED.value)
            if self._verification_blocked(phase):
                raise VerificationFailure(
                    f"Phase {phase_id} failed verification; acknowledge it or re-run the phase",
                    details={"phase_id": phase_id}
                )
            self._complete_locked(outbox, phase)
            self._snapshot_locked(outbox, force=True)
            ready = self._graph.next_ready(self._statuses_locked())

        self._dispatch(outbox)
        return ready

    def fail_phase(self, phase_id: str, error: str) -> MigrationPhase:
        """
        Mark a pending or running phase failed.

        Dependent phases are left pending; they never become ready.
        """
        outbox = _Outbox()
        with self._lock:
            phase = self._phase_locked(phase_id)
            if phase.status not in (PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS):
                raise InvalidTransition(f"phase {phase_id}", phase.status.value, PhaseStatus.FAILED.value)

            phase.status = PhaseStatus.FAILED
            phase.end_time = datetime.utcnow()
            phase.errors.append(error)
            self._recompute_overall_locked()
            self._refresh_run_status_locked(outbox)
            self._alert_locked(outbox, AlertSeverity.ERROR, f"Phase failed: {phase.name}: {error}", phase_id=phase_id)
            self._event_locked(outbox, TrackerEventType.PHASE_FAILED, phase_id, details={"error": error})
            self._snapshot_locked(outbox, force=True)
            result = phase.model_copy(deep=True)

        logger.error(f"Phase {phase_id} failed: {error}")
        self._dispatch(outbox)
        return result

    def skip_phase(self, phase_id: str, reason: Optional[str] = None) -> MigrationPhase:
        """Skip a pending phase. Its dependents treat it as satisfied."""
        outbox = _Outbox()
        with self._lock:
            phase = self._phase_locked(phase_id)
            if phase.status != PhaseStatus.PENDING:
                raise InvalidTransition(f"phase {phase_id}", phase.status.value, PhaseStatus.SKIPPED.value)

            phase.status = PhaseStatus.SKIPPED
            phase.progress = 100.0
            phase.end_time = datetime.utcnow()
            if reason:
                phase.warnings.append(f"Skipped: {reason}")
            self._recompute_overall_locked()
            self._refresh_run_status_locked(outbox)
            message = f"Phase skipped: {phase.name}" + (f" ({reason})" if reason else "")
            self._alert_locked(outbox, AlertSeverity.INFO, message, phase_id=phase_id)
            self._event_locked(outbox, TrackerEventType.PHASE_SKIPPED, phase_id, details={"reason": reason})
            self._snapshot_locked(outbox, force=True)
            result = phase.model_copy(deep=True)

        self._dispatch(outbox)
        return result

    def retry_phase(self, phase_id: str) -> MigrationPhase:
        """
        Reset a failed phase to pending for another attempt.

        The failed attempt is archived in ``phase.attempts`` together with
        the worker metadata it reported; errors and warnings are kept.
        """
        outbox = _Outbox()
        with self._lock:
            phase = self._phase_locked(phase_id)
            if phase.status != PhaseStatus.FAILED:
                raise InvalidTransition(
                    f"phase {phase_id}", phase.status.value, PhaseStatus.PENDING.value,
                    reason="only failed phases can be retried"
                )

            phase.attempts.append(PhaseAttempt(
                attempt=phase.attempt_number,
                status=phase.status,
                progress=phase.progress,
                start_time=phase.start_time,
                end_time=phase.end_time,
                errors=list(phase.errors),
                metadata={k: v for k, v in phase.metadata.items() if k in WORKER_METADATA_KEYS},
            ))
            phase.status = PhaseStatus.PENDING
            for key in WORKER_METADATA_KEYS:
                phase.metadata.pop(key, None)
            phase.progress = 0.0
            phase.start_time = None
            phase.end_time = None
            phase.verification_failed = False
            phase.verification_acknowledged = False
            for sub_task in phase.sub_tasks:
                sub_task.status = PhaseStatus.PENDING
                sub_task.progress = 0.0
                sub_task.start_time = None
                sub_task.end_time = None

            self._recompute_overall_locked()
            self._refresh_run_status_locked(outbox)
            self._alert_locked(
                outbox, AlertSeverity.INFO,
                f"Phase reset for attempt {phase.attempt_number}: {phase.name}", phase_id=phase_id
            )
            self._event_locked(outbox, TrackerEventType.PHASE_RESET, phase_id, details={
                "attempt": phase.attempt_number,
            })
            self._snapshot_locked(outbox, force=True)
            result = phase.model_copy(deep=True)

        self._dispatch(outbox)
        return result

    def record_verification_failure(
        self,
        phase_id: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        """Flag a running phase as failing verification. Blocks its completion."""
        outbox = _Outbox()
        with self._lock:
            phase = self._phase_locked(phase_id)
            if phase.status != PhaseStatus.IN_PROGRESS:
                raise InvalidTransition(
                    f"phase {phase_id}", phase.status.value, "verification_failed",
                    reason="verification applies to a running phase"
                )
            phase.verification_failed = True
            phase.verification_acknowledged = False
            phase.errors.append(f"Verification failed: {message}")
            phase.metadata["verification_passed"] = False
            self._alert_locked(
                outbox, AlertSeverity.ERROR, f"Verification failed for {phase.name}: {message}", phase_id=phase_id
            )
            self._event_locked(outbox, TrackerEventType.VERIFICATION_FAILED, phase_id, details=details or {})
            self._snapshot_locked(outbox, force=True)

        logger.error(f"Verification failed for phase {phase_id}: {message}")
        self._dispatch(outbox)

    def acknowledge_verification(self, phase_id: str, note: Optional[str] = None):
        """Operator override allowing a phase with failed verification to complete."""
        outbox = _Outbox()
        with self._lock:
            phase = self._phase_locked(phase_id)
            if not phase.verification_failed:
                raise InvalidTransition(
                    f"phase {phase_id}", phase.status.value, "verification_acknowledged",
                    reason="no failed verification to acknowledge"
                )
            phase.verification_acknowledged = True
            phase.warnings.append("Verification failure acknowledged" + (f": {note}" if note else ""))
            self._alert_locked(
                outbox, AlertSeverity.WARNING, f"Verification failure acknowledged for {phase.name}", phase_id=phase_id
            )
            self._event_locked(outbox, TrackerEventType.VERIFICATION_ACKNOWLEDGED, phase_id, details={"note": note})
            self._snapshot_locked(outbox, force=True)
        self._dispatch(outbox)

    # ------------------------------------------------------------------
    # Sub-task transitions

    def start_sub_task(self, phase_id: str, sub_task_id: str) -> SubTask:
        outbox = _Outbox()
        with self._lock:
            phase, sub_task = self._sub_task_locked(phase_id, sub_task_id)
            entity = f"sub-task {phase_id}/{sub_task_id}"
            if self._run.status == RunStatus.PAUSED:
                raise InvalidTransition(entity, sub_task.status.value, PhaseStatus.IN_PROGRESS.value,
                                        reason="migration is paused")
            if phase.status != PhaseStatus.IN_PROGRESS:
                raise InvalidTransition(entity, sub_task.status.value, PhaseStatus.IN_PROGRESS.value,
                                        reason=f"phase {phase_id} is {phase.status.value}")
            if sub_task.status != PhaseStatus.PENDING:
                raise InvalidTransition(entity, sub_task.status.value, PhaseStatus.IN_PROGRESS.value)

            sub_task.status = PhaseStatus.IN_PROGRESS
            sub_task.start_time = datetime.utcnow()
            self._event_locked(outbox, TrackerEventType.SUB_TASK_STARTED, phase_id, sub_task_id)
            self._snapshot_locked(outbox, force=True)
            result = sub_task.model_copy(deep=True)

        self._dispatch(outbox)
        return result

    def update_sub_task_progress(
        self,
        phase_id: str,
        sub_task_id: str,
        progress: float,
        metadata: Optional[Dict[str, Any]] = None
    ) -> float:
        """
        Set a sub-task's progress. The phase's progress becomes the mean
        of its sub-tasks. Reaching 100 completes the sub-task.

        Returns:
            The recomputed overall progress
        """
        outbox = _Outbox()
        with self._lock:
            phase, sub_task = self._sub_task_locked(phase_id, sub_task_id)
            if sub_task.status != PhaseStatus.IN_PROGRESS:
                raise InvalidTransition(
                    f"sub-task {phase_id}/{sub_task_id}", sub_task.status.value, PhaseStatus.IN_PROGRESS.value,
                    reason="progress can only be reported for a running sub-task"
                )

            clamped = max(0.0, min(100.0, float(progress)))
            if clamped >= sub_task.progress:
                sub_task.progress = clamped
            if metadata:
                sub_task.metadata.update(metadata)
            if sub_task.progress >= 100.0:
                self._finish_sub_task_locked(outbox, phase, sub_task)

            overall = self._derive_phase_progress_locked(outbox, phase)
            self._snapshot_locked(outbox, force=sub_task.status == PhaseStatus.COMPLETED)

        self._dispatch(outbox)
        return overall

    def complete_sub_task(self, phase_id: str, sub_task_id: str) -> float:
        outbox = _Outbox()
        with self._lock:
            phase, sub_task = self._sub_task_locked(phase_id, sub_task_id)
            if sub_task.status != PhaseStatus.IN_PROGRESS:
                raise InvalidTransition(
                    f"sub-task {phase_id}/{sub_task_id}", sub_task.status.value, PhaseStatus.COMPLETED.value
                )
            self._finish_sub_task_locked(outbox, phase, sub_task)
            overall = self._derive_phase_progress_locked(outbox, phase)
            self._snapshot_locked(outbox, force=True)

        self._dispatch(outbox)
        return overall

    def fail_sub_task(self, phase_id: str, sub_task_id: str, error: str) -> SubTask:
        """Mark a sub-task failed. Recorded as a phase warning; the phase keeps running."""
        outbox = _Outbox()
        with self._lock:
            phase, sub_task = self._sub_task_locked(phase_id, sub_task_id)
            if sub_task.status not in (PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS):
                raise InvalidTransition(
                    f"sub-task {phase_id}/{sub_task_id}", sub_task.status.value, PhaseStatus.FAILED.value
                )
            sub_task.status = PhaseStatus.FAILED
            sub_task.end_time = datetime.utcnow()
            phase.warnings.append(f"Sub-task {sub_task.name} failed: {error}")
            self._alert_locked(
                outbox, AlertSeverity.WARNING, f"Sub-task failed: {sub_task.name}: {error}",
                phase_id=phase_id, sub_task_id=sub_task_id
            )
            self._event_locked(outbox, TrackerEventType.SUB_TASK_FAILED, phase_id, sub_task_id, {"error": error})
            self._snapshot_locked(outbox, force=True)
            result = sub_task.model_copy(deep=True)

        self._dispatch(outbox)
        return result

    def skip_sub_task(self, phase_id: str, sub_task_id: str, reason: Optional[str] = None) -> SubTask:
        outbox = _Outbox()
        with self._lock:
            phase, sub_task = self._sub_task_locked(phase_id, sub_task_id)
            if sub_task.status != PhaseStatus.PENDING:
                raise InvalidTransition(
                    f"sub-task {phase_id}/{sub_task_id}", sub_task.status.value, PhaseStatus.SKIPPED.value
                )
            sub_task.status = PhaseStatus.SKIPPED
            sub_task.progress = 100.0
            sub_task.end_time = datetime.utcnow()
            if reason:
                sub_task.metadata["skip_reason"] = reason
            self._event_locked(outbox, TrackerEventType.SUB_TASK_SKIPPED, phase_id, sub_task_id, {"reason": reason})
            if phase.status == PhaseStatus.IN_PROGRESS:
                self._derive_phase_progress_locked(outbox, phase)
            self._snapshot_locked(outbox, force=True)
            result = sub_task.model_copy(deep=True)

        self._dispatch(outbox)
        return result

    # ------------------------------------------------------------------
    # Alerts and metrics

    def create_alert(
        self,
        severity: AlertSeverity,
        message: str,
        phase_id: Optional[str] = None,
        sub_task_id: Optional[str] = None
    ) -> Alert:
        """Append an alert to the ring; the oldest alert is dropped at capacity."""
        outbox = _Outbox()
        with self._lock:
            self._require_run()
            alert = self._alert_locked(outbox, AlertSeverity(severity), message, phase_id, sub_task_id)
            self._snapshot_locked(outbox, force=False)
        self._dispatch(outbox)
        return alert

    def get_alerts(self, limit: Optional[int] = None) -> List[Alert]:
        """Most recent alerts first."""
        with self._lock:
            alerts = list(reversed(self._alerts))
        return alerts[:limit] if limit else alerts

    def update_metrics(self, partial: Dict[str, Any]) -> MetricsSnapshot:
        """
        Merge ``partial`` into the current metrics snapshot.

        Top-level fields are replaced; ``resource_utilization`` and
        ``cost_metrics`` are merged one level deep.
        """
        outbox = _Outbox()
        with self._lock:
            result = self._merge_metrics_locked(outbox, partial)
        self._dispatch(outbox)
        return result

    def record_operations(
        self,
        succeeded: int = 0,
        failed: int = 0,
        bytes_moved: int = 0,
        elapsed: float = 0.0
    ) -> MetricsSnapshot:
        """Fold a batch of unit outcomes into the counters, rates and cost."""
        outbox = _Outbox()
        with self._lock:
            metrics = self._require_run().metrics
            now = self._monotonic()

            self._speed_samples.append((now, max(elapsed, 0.0), bytes_moved))
            while self._speed_samples and now - self._speed_samples[0][0] > SPEED_WINDOW_SECONDS:
                self._speed_samples.popleft()
            window_start = min(ts - dur for ts, dur, _ in self._speed_samples)
            window_bytes = sum(b for _, _, b in self._speed_samples)
            span = now - window_start
            speed = window_bytes / span if span > 0 else 0.0

            successful = metrics.successful_operations + succeeded
            failed_total = metrics.failed_operations + failed
            operations = successful + failed_total
            self._operation_time_total += elapsed
            total_migrated = metrics.total_data_migrated + bytes_moved
            per_gb = metrics.cost_metrics.per_gb or self.settings.cost_per_gb

            partial = {
                "successful_operations": successful,
                "failed_operations": failed_total,
                "total_data_migrated": total_migrated,
                "error_rate": (failed_total / operations * 100.0) if operations else 0.0,
                "average_operation_time": (self._operation_time_total / operations) if operations else 0.0,
                "migration_speed": speed,
                "cost_metrics": {
                    "per_gb": per_gb,
                    "actual": total_migrated / BYTES_PER_GB * per_gb,
                },
            }
            result = self._merge_metrics_locked(outbox, partial)
        self._dispatch(outbox)
        return result

    def get_metrics_history(self) -> List[MetricsSnapshot]:
        with self._lock:
            return [snapshot.model_copy(deep=True) for snapshot in self._metrics_history]

    # ------------------------------------------------------------------
    # Dashboard

    def get_dashboard(self, recent_alerts: Optional[int] = None) -> Dashboard:
        """Immutable snapshot of the run for display."""
        limit = recent_alerts or self.settings.recent_alerts
        with self._lock:
            run = self._snapshot_run_locked()
            graph = self._graph
            blocked = graph.blocked_by_failure(self._statuses_locked())

        now = datetime.utcnow()
        current_phase = next(
            (p.id for p in run.phases if p.status not in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED)),
            None
        )
        counts = PhaseCounts(
            total=len(run.phases),
            pending=run.count_by_status(PhaseStatus.PENDING),
            in_progress=run.count_by_status(PhaseStatus.IN_PROGRESS),
            completed=run.count_by_status(PhaseStatus.COMPLETED),
            failed=run.count_by_status(PhaseStatus.FAILED),
            skipped=run.count_by_status(PhaseStatus.SKIPPED),
        )
        overview = DashboardOverview(
            migration_id=run.migration_id,
            status=run.status,
            overall_progress=run.overall_progress,
            current_phase=current_phase,
            counts=counts,
            start_time=run.start_time,
            end_time=run.end_time,
            estimated_completion=self.estimator.estimate_completion(run, now=now),
            failed_units=run.failed_units,
            blocked_phases=blocked,
        )
        resource_usage = [
            ResourceUsagePoint(
                timestamp=snapshot.updated_at,
                cpu_percent=snapshot.resource_utilization.cpu_percent,
                memory_percent=snapshot.resource_utilization.memory_percent,
                network_bytes_per_sec=snapshot.resource_utilization.network_bytes_per_sec,
                storage_bytes=snapshot.resource_utilization.storage_bytes,
            )
            for snapshot in run.metrics_history
        ]
        return Dashboard(
            overview=overview,
            phases=run.phases,
            recent_alerts=list(reversed(run.alerts))[:limit],
            metrics=run.metrics,
            timeline=build_timeline(run, graph, now=now),
            resource_usage=resource_usage,
            generated_at=now,
        )

    def flush(self):
        """Persist the current state regardless of the throttle."""
        outbox = _Outbox()
        with self._lock:
            if self._run is None:
                return
            self._snapshot_locked(outbox, force=True)
        self._dispatch(outbox)

    # ------------------------------------------------------------------
    # Internals (callers hold self._lock)

    def _require_run(self) -> MigrationRun:
        if self._run is None:
            raise InvalidTransition("migration", "uninitialized", "in_use", reason="call initialize_migration first")
        return self._run

    def _phase_locked(self, phase_id: str) -> MigrationPhase:
        phase = self._require_run().get_phase(phase_id)
        if phase is None:
            raise PhaseNotFoundError(phase_id)
        return phase

    def _sub_task_locked(self, phase_id: str, sub_task_id: str) -> Tuple[MigrationPhase, SubTask]:
        phase = self._phase_locked(phase_id)
        sub_task = phase.get_sub_task(sub_task_id)
        if sub_task is None:
            raise SubTaskNotFoundError(phase_id, sub_task_id)
        return phase, sub_task

    def _statuses_locked(self) -> Dict[str, PhaseStatus]:
        return {phase.id: phase.status for phase in self._run.phases}

    @staticmethod
    def _verification_blocked(phase: MigrationPhase) -> bool:
        return phase.verification_failed and not phase.verification_acknowledged

    def _recompute_overall_locked(self) -> float:
        phases = self._run.phases
        overall = sum(p.progress for p in phases) / len(phases) if phases else 0.0
        self._run.overall_progress = overall
        return overall

    def _derive_phase_progress_locked(self, outbox: _Outbox, phase: MigrationPhase) -> float:
        if phase.sub_tasks and phase.status == PhaseStatus.IN_PROGRESS:
            mean = sum(st.progress for st in phase.sub_tasks) / len(phase.sub_tasks)
            phase.progress = max(phase.progress, mean)
            if phase.progress >= 100.0 and not self._verification_blocked(phase):
                self._complete_locked(outbox, phase)
        return self._recompute_overall_locked()

    def _merge_metrics_locked(self, outbox: _Outbox, partial: Dict[str, Any]) -> MetricsSnapshot:
        run = self._require_run()
        unknown = set(partial) - set(MetricsSnapshot.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown metrics fields: {', '.join(sorted(unknown))}")

        data = run.metrics.model_dump()
        for key, value in partial.items():
            if hasattr(value, "model_dump"):
                value = value.model_dump()
            if key in _NESTED_METRICS and isinstance(value, dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        data["updated_at"] = datetime.utcnow()
        run.metrics = MetricsSnapshot.model_validate(data)
        self._metrics_history.append(run.metrics.model_copy(deep=True))
        self._snapshot_locked(outbox, force=False)
        return run.metrics.model_copy(deep=True)

    def _finish_sub_task_locked(self, outbox: _Outbox, phase: MigrationPhase, sub_task: SubTask):
        sub_task.status = PhaseStatus.COMPLETED
        sub_task.progress = 100.0
        sub_task.end_time = datetime.utcnow()
        self._event_locked(outbox, TrackerEventType.SUB_TASK_COMPLETED, phase.id, sub_task.id)

    def _complete_locked(self, outbox: _Outbox, phase: MigrationPhase):
        phase.status = PhaseStatus.COMPLETED
        phase.progress = 100.0
        phase.end_time = datetime.utcnow()
        self._recompute_overall_locked()
        self._refresh_run_status_locked(outbox)
        self._alert_locked(outbox, AlertSeverity.INFO, f"Phase completed: {phase.name}", phase_id=phase.id)
        self._event_locked(outbox, TrackerEventType.PHASE_COMPLETED, phase.id, details={
            "duration_minutes": phase.actual_duration_minutes,
        })
        logger.info(f"Phase {phase.id} completed")

    def _refresh_run_status_locked(self, outbox: _Outbox):
        run = self._run
        if run.status == RunStatus.PAUSED:
            return

        statuses = [phase.status for phase in run.phases]
        previous = run.status
        if statuses and all(status.satisfies_dependency for status in statuses):
            run.status = RunStatus.COMPLETED
        elif PhaseStatus.IN_PROGRESS in statuses:
            run.status = RunStatus.IN_PROGRESS
        elif PhaseStatus.FAILED in statuses:
            run.status = RunStatus.FAILED
        elif any(status != PhaseStatus.PENDING for status in statuses):
            run.status = RunStatus.IN_PROGRESS
        else:
            run.status = RunStatus.PENDING

        if run.status == RunStatus.COMPLETED and previous != RunStatus.COMPLETED:
            run.end_time = datetime.utcnow()
            self._alert_locked(outbox, AlertSeverity.INFO, "Migration completed")
            self._event_locked(outbox, TrackerEventType.MIGRATION_COMPLETED)
        elif run.status != RunStatus.COMPLETED:
            run.end_time = None

    def _alert_locked(
        self,
        outbox: _Outbox,
        severity: AlertSeverity,
        message: str,
        phase_id: Optional[str] = None,
        sub_task_id: Optional[str] = None
    ) -> Alert:
        alert = Alert(severity=severity, message=message, phase_id=phase_id, sub_task_id=sub_task_id)
        self._alerts.append(alert)
        outbox.alerts.append(alert)
        return alert

    def _event_locked(
        self,
        outbox: _Outbox,
        event_type: TrackerEventType,
        phase_id: Optional[str] = None,
        sub_task_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        outbox.events.append(TrackerEvent(
            event_type=event_type,
            phase_id=phase_id,
            sub_task_id=sub_task_id,
            details=details or {},
        ))

    def _snapshot_run_locked(self) -> MigrationRun:
        run = self._require_run().model_copy(deep=True)
        run.alerts = list(self._alerts)
        run.metrics_history = [snapshot.model_copy() for snapshot in self._metrics_history]
        return run

    def _snapshot_locked(self, outbox: _Outbox, force: bool):
        self._version += 1
        if self.store is None:
            return
        now = self._monotonic()
        if not force and now - self._last_persist < self.settings.persist_interval_seconds:
            return
        self._last_persist = now
        outbox.snapshot = (self._version, self._snapshot_run_locked())

    def _dispatch(self, outbox: _Outbox):
        if outbox.snapshot is not None:
            version, run = outbox.snapshot
            with self._persist_lock:
                if version > self._persisted_version:
                    self.store.save(run)
                    self._persisted_version = version

        for alert in outbox.alerts:
            if self.audit_logger:
                self.audit_logger.log_event("alert", phase_id=alert.phase_id, details={
                    "severity": alert.severity.value,
                    "message": alert.message,
                })
            for sink in self.alert_sinks:
                try:
                    sink.notify(alert)
                except Exception as e:
                    logger.warning(f"Alert sink {type(sink).__name__} failed: {e}")

        for event in outbox.events:
            if self.audit_logger:
                self.audit_logger.log_event(event.event_type.value, phase_id=event.phase_id, details={
                    "sub_task_id": event.sub_task_id,
                    **event.details,
                })
            for callback in list(self._callbacks):
                try:
                    callback(event)
                except Exception as e:
                    logger.warning(f"Tracker callback error: {e}")


class TrackerProgressReporter:
    """
    ProgressReporter that forwards worker progress into a tracker.

    Progress is reported without auto-completing the phase; the caller
    completes it after verification. If the phase is no longer running
    (for example the operator failed it), the cancellation token is set
    so the worker stops scheduling units.
    """

    def __init__(self, tracker: ProgressTracker, cancel_token: Optional[CancellationToken] = None):
        self.tracker = tracker
        self.cancel_token = cancel_token

    def report(self, phase_id: str, percent: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            self.tracker.update_phase_progress(phase_id, percent, metadata, complete_on_full=False)
        except InvalidTransition as e:
            logger.debug(f"Dropping progress for {phase_id}: {e.message}")
            if self.cancel_token is not None:
                self.cancel_token.cancel(f"phase {phase_id} is no longer running")

    def record_operations(self, succeeded: int = 0, failed: int = 0, bytes_moved: int = 0, elapsed: float = 0.0) -> None:
        self.tracker.record_operations(succeeded=succeeded, failed=failed, bytes_moved=bytes_moved, elapsed=elapsed)
