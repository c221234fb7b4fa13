"""
Migration orchestrator for running the phases of one migration.

The MigrationOrchestrator drives the ProgressTracker: it starts ready
phases, runs each phase's worker with a cancellation token, forwards
worker progress, verifies the result, and completes or fails the phase.
Independent branches of the phase graph run concurrently.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from rich.console import Console

from migration_engine.core.exceptions import ConfigurationError, InvalidTransition, MigrationEngineError
from migration_engine.models.config import EngineSettings
from migration_engine.models.phase import MigrationPhase, PhaseStatus
from migration_engine.models.plan import MigrationPlan
from migration_engine.models.run import AlertSeverity, RunStatus
from migration_engine.monitoring.dashboard import format_bytes
from migration_engine.monitoring.progress_tracker import (
    BYTES_PER_GB,
    ProgressTracker,
    TrackerEvent,
    TrackerEventType,
    TrackerProgressReporter,
)
from migration_engine.monitoring.resources import ResourceMonitor
from migration_engine.workers.base import BoundWorker, MigrationProgress, PlanSummary, RollbackReport
from migration_engine.workers.batch import BatchExecutor, CancellationToken
from migration_engine.workers.verification import VerificationResult

logger = logging.getLogger(__name__)


@dataclass
class PhaseOutcome:
    """What happened to one phase during a run."""
    phase_id: str
    status: PhaseStatus
    progress: Optional[MigrationProgress] = None
    verification: Optional[VerificationResult] = None
    rollback: Optional[RollbackReport] = None
    error: Optional[str] = None
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED)

    @property
    def awaiting_acknowledgement(self) -> bool:
        return self.verification is not None and not self.verification.passed


@dataclass
class RunSummary:
    """Result of one ``MigrationOrchestrator.run`` call."""
    migration_id: str
    status: RunStatus
    outcomes: Dict[str, PhaseOutcome] = field(default_factory=dict)
    plans: Dict[str, PlanSummary] = field(default_factory=dict)
    manual_phases: List[str] = field(default_factory=list)
    blocked_phases: List[str] = field(default_factory=list)
    failed_units: int = 0
    halted: bool = False
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        """Every phase completed or skipped and no unit failed."""
        return self.status == RunStatus.COMPLETED and self.failed_units == 0

    @property
    def exit_code(self) -> int:
        if self.dry_run:
            return 0
        return 0 if self.succeeded else 1


class MigrationOrchestrator:
    """
    Runs the phases of one migration against a ProgressTracker.

    Phases with a bound worker are executed; phases without one are
    manual and wait for the operator.

    Args:
        tracker: Tracker owning the run
        workers: Worker and config per phase id
        settings: Engine settings
        console: Rich console for per-phase output (optional)
        monitor_resources: Sample host resources with psutil while running
    """

    def __init__(
        self,
        tracker: ProgressTracker,
        workers: Optional[Dict[str, BoundWorker]] = None,
        settings: Optional[EngineSettings] = None,
        console: Optional[Console] = None,
        monitor_resources: bool = True,
        full_verification: bool = False
    ):
        self.tracker = tracker
        self.workers: Dict[str, BoundWorker] = dict(workers or {})
        self.settings = settings or tracker.settings
        self.console = console
        self.monitor_resources = monitor_resources
        self.full_verification = full_verification

        self._tokens: Dict[str, CancellationToken] = {}
        self.tracker.add_callback(self._on_tracker_event)

    @classmethod
    def from_plan(
        cls,
        plan: MigrationPlan,
        tracker: ProgressTracker,
        settings: Optional[EngineSettings] = None,
        **kwargs
    ) -> "MigrationOrchestrator":
        """Build an orchestrator whose workers come from the plan's worker sections."""
        from migration_engine.workers.factory import WorkerFactory

        settings = settings or tracker.settings
        executor = BatchExecutor(concurrency=settings.concurrency, unit_timeout=settings.unit_timeout_seconds)
        workers = WorkerFactory.workers_for_plan(plan, executor=executor)
        return cls(tracker, workers=workers, settings=settings, **kwargs)

    def prepare(self, migration_id: str, phases: List[MigrationPhase]) -> bool:
        """
        Load the persisted run for ``migration_id`` or initialize a new one.

        Returns:
            True when an existing run was loaded
        """
        if self.tracker.is_initialized:
            return True
        if self.tracker.load_migration(migration_id):
            self._recover_interrupted()
            return True
        self.tracker.initialize_migration(migration_id, phases)
        return False

    def _recover_interrupted(self):
        # A phase left running by a previous process has no worker behind it
        for phase in self.tracker.run.phases:
            if phase.status != PhaseStatus.IN_PROGRESS:
                continue
            if phase.verification_failed and not phase.verification_acknowledged:
                continue
            if phase.id not in self.workers:
                continue
            self.tracker.fail_phase(phase.id, "Interrupted: the process exited while the phase was running")

    # ------------------------------------------------------------------
    # Planning

    async def plan(self) -> Dict[str, PlanSummary]:
        """Dry-run plans for every phase that has a worker, in declared order."""
        plans: Dict[str, PlanSummary] = {}
        for phase in self.tracker.run.phases:
            bound = self.workers.get(phase.id)
            if bound is None:
                continue
            plans[phase.id] = await bound.worker.plan(bound.config)
            logger.info(
                f"Plan for {phase.id}: {plans[phase.id].total_units} units, {plans[phase.id].total_size} size"
            )
        return plans

    # ------------------------------------------------------------------
    # Phase execution

    async def run_phase(
        self,
        phase_id: str,
        dry_run: bool = False,
        skip_verification: bool = False
    ) -> PhaseOutcome:
        """
        Run one phase's worker.

        The phase is completed only when every unit succeeded and
        verification passed. Unit failures, cancellation and worker
        errors fail the phase. A failed verification leaves the phase
        running until it is acknowledged or the phase is retried.

        Raises:
            ConfigurationError: If the phase has no worker
            InvalidTransition: If the phase cannot start
        """
        bound = self.workers.get(phase_id)
        if bound is None:
            raise ConfigurationError(f"Phase {phase_id} has no worker; complete it manually")

        if dry_run:
            progress = await bound.worker.execute(bound.config, dry_run=True)
            return PhaseOutcome(
                phase_id=phase_id,
                status=self.tracker.get_phase(phase_id).status,
                progress=progress,
                dry_run=True,
            )

        self.tracker.start_phase(phase_id)
        token = CancellationToken()
        self._tokens[phase_id] = token
        bound.worker.bind_reporter(TrackerProgressReporter(self.tracker, token), phase_id)

        try:
            return await self._execute_phase(phase_id, bound, token, skip_verification)
        except MigrationEngineError as e:
            logger.error(f"Phase {phase_id} failed: {e.message}")
            self._fail_if_running(phase_id, e.message)
            return PhaseOutcome(phase_id=phase_id, status=PhaseStatus.FAILED, error=e.message)
        except Exception as e:
            logger.exception(f"Worker for phase {phase_id} raised")
            error = f"{type(e).__name__}: {e}"
            self._fail_if_running(phase_id, error)
            return PhaseOutcome(phase_id=phase_id, status=PhaseStatus.FAILED, error=error)
        finally:
            self._tokens.pop(phase_id, None)

    async def _execute_phase(
        self,
        phase_id: str,
        bound: BoundWorker,
        token: CancellationToken,
        skip_verification: bool
    ) -> PhaseOutcome:
        worker, config = bound.worker, bound.config
        progress = await worker.execute(config, cancel_token=token)
        self._report_final(phase_id, progress, worker.worker_type)
        self._print(phase_id, progress)

        if progress.cancelled:
            reason = token.reason or "cancelled"
            self._fail_if_running(phase_id, f"Cancelled: {reason}")
            rollback = await worker.rollback_or_skip(config, progress)
            return PhaseOutcome(
                phase_id=phase_id, status=PhaseStatus.FAILED, progress=progress, rollback=rollback, error=reason
            )

        if progress.failed_units:
            error = f"{progress.failed_units} of {progress.total_units} units failed"
            self._fail_if_running(phase_id, error)
            rollback = await worker.rollback_or_skip(config, progress)
            logger.warning(f"Phase {phase_id}: {rollback.message}")
            return PhaseOutcome(
                phase_id=phase_id, status=PhaseStatus.FAILED, progress=progress, rollback=rollback, error=error
            )

        verification = None
        if not skip_verification:
            verification = await worker.verify(config, full=self.full_verification)
            if verification.passed:
                self.tracker.update_phase_progress(
                    phase_id, 100.0, {"verification_passed": True}, complete_on_full=False
                )
            else:
                self.tracker.record_verification_failure(
                    phase_id,
                    verification.summary(),
                    details={"failed_checks": [check.name for check in verification.failed_checks]},
                )
            for warning in verification.warnings:
                self.tracker.create_alert(AlertSeverity.WARNING, warning, phase_id=phase_id)

        rollback = await worker.rollback_or_skip(config, progress, verification)

        if verification is not None and not verification.passed:
            return PhaseOutcome(
                phase_id=phase_id,
                status=PhaseStatus.IN_PROGRESS,
                progress=progress,
                verification=verification,
                rollback=rollback,
                error="verification failed",
            )

        self.tracker.complete_phase(phase_id)
        return PhaseOutcome(
            phase_id=phase_id,
            status=PhaseStatus.COMPLETED,
            progress=progress,
            verification=verification,
            rollback=rollback,
        )

    def _report_final(self, phase_id: str, progress: MigrationProgress, worker_type: str):
        try:
            self.tracker.update_phase_progress(
                phase_id, progress.percent, dict(progress.to_metadata(worker_type)), complete_on_full=False
            )
        except InvalidTransition as e:
            logger.debug(f"Phase {phase_id} stopped before final progress: {e.message}")

    def _fail_if_running(self, phase_id: str, error: str):
        try:
            self.tracker.fail_phase(phase_id, error)
        except InvalidTransition:
            # Already failed by cancel_phase or the operator
            logger.debug(f"Phase {phase_id} already left the running state")

    def cancel_phase(self, phase_id: str, reason: str = "cancelled by operator"):
        """
        Fail a pending or running phase and stop its worker.

        Units already in flight finish; no further units are scheduled.
        """
        token = self._tokens.get(phase_id)
        if token is not None:
            token.cancel(reason)
        self.tracker.fail_phase(phase_id, f"Cancelled: {reason}")

    def _on_tracker_event(self, event: TrackerEvent):
        if event.event_type == TrackerEventType.PHASE_FAILED and event.phase_id:
            token = self._tokens.get(event.phase_id)
            if token is not None:
                token.cancel(event.details.get("error") or "phase failed")

    # ------------------------------------------------------------------
    # Whole run

    async def run(
        self,
        dry_run: bool = False,
        skip_verification: bool = False,
        halt_on_failure: bool = False,
        retry_failed: bool = False
    ) -> RunSummary:
        """
        Run every ready phase until nothing more can start.

        Ready phases are started as soon as their dependencies finish.
        A failed phase never blocks unrelated branches unless
        ``halt_on_failure`` is set, in which case no new phase is started
        after the first failure. In a dry run the phases are only planned
        and the tracker is left untouched.
        """
        migration_id = self.tracker.migration_id
        if dry_run:
            plans = await self.plan()
            return RunSummary(
                migration_id=migration_id,
                status=self.tracker.run.status,
                plans=plans,
                manual_phases=self._manual_phases(),
                dry_run=True,
            )

        if retry_failed:
            for phase in self.tracker.run.phases:
                if phase.status == PhaseStatus.FAILED:
                    self.tracker.retry_phase(phase.id)

        monitor = None
        if self.monitor_resources:
            monitor = ResourceMonitor(self.tracker, interval=self.settings.resource_sample_interval_seconds)
            await monitor.start()

        outcomes: Dict[str, PhaseOutcome] = {}
        scheduled: Set[str] = set()
        running: Dict[asyncio.Task, str] = {}
        halted = False

        try:
            while True:
                if not halted and self.tracker.run.status == RunStatus.PAUSED:
                    logger.warning("Migration paused; no new phases will start")
                    halted = True

                if not halted:
                    for phase_id in self.tracker.next_ready_phases():
                        if phase_id in scheduled or phase_id not in self.workers:
                            continue
                        scheduled.add(phase_id)
                        task = asyncio.create_task(
                            self.run_phase(phase_id, skip_verification=skip_verification)
                        )
                        running[task] = phase_id

                if not running:
                    break

                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    phase_id = running.pop(task)
                    try:
                        outcome = task.result()
                    except InvalidTransition as e:
                        logger.warning(f"Phase {phase_id} could not start: {e.message}")
                        outcome = PhaseOutcome(
                            phase_id=phase_id,
                            status=self.tracker.get_phase(phase_id).status,
                            error=e.message,
                        )
                    outcomes[phase_id] = outcome
                    self._update_cost_estimate()

                    if outcome.status == PhaseStatus.FAILED and halt_on_failure and not halted:
                        logger.warning(f"Halting after failure of phase {phase_id}")
                        halted = True
        finally:
            if monitor is not None:
                await monitor.stop()
            self.tracker.flush()

        run = self.tracker.run
        summary = RunSummary(
            migration_id=migration_id,
            status=run.status,
            outcomes=outcomes,
            manual_phases=self._manual_phases(),
            blocked_phases=self.tracker.blocked_phases(),
            failed_units=run.failed_units,
            halted=halted,
        )
        logger.info(
            f"Run of {migration_id} finished: {run.status.value}, "
            f"{run.overall_progress:.1f}%, {summary.failed_units} failed units"
        )
        return summary

    def _manual_phases(self) -> List[str]:
        return [
            phase.id for phase in self.tracker.run.phases
            if phase.id not in self.workers and phase.status in (PhaseStatus.PENDING, PhaseStatus.IN_PROGRESS)
        ]

    def _update_cost_estimate(self):
        per_gb = self.settings.cost_per_gb
        if not per_gb:
            return
        total_bytes = sum(
            phase.metadata.get("bytes_total", 0) for phase in self.tracker.run.phases
        )
        self.tracker.update_metrics({"cost_metrics": {"estimated": total_bytes / BYTES_PER_GB * per_gb}})

    def _print(self, phase_id: str, progress: MigrationProgress):
        if self.console is None:
            return
        color = "green" if progress.is_successful else "red"
        size = format_bytes(progress.migrated_size) if progress.size_unit == "bytes" else f"{progress.migrated_size} rows"
        self.console.print(
            f"[{color}]{phase_id}[/{color}]: {progress.migrated_units}/{progress.total_units} units "
            f"({size}), {progress.failed_units} failed, {progress.unchanged_units} unchanged"
        )
