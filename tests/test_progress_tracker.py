"""
Tests for the progress tracker state machine, alerts, metrics and dashboard.
"""

import random
import threading
from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from migration_engine.core.exceptions import (
    ConfigurationError,
    InvalidTransition,
    PhaseNotFoundError,
    SubTaskNotFoundError,
    VerificationFailure,
)
from migration_engine.models.config import EngineSettings
from migration_engine.models.phase import PhaseStatus
from migration_engine.models.run import AlertSeverity, RunStatus
from migration_engine.monitoring.progress_tracker import (
    BYTES_PER_GB,
    ProgressTracker,
    TrackerEventType,
    TrackerProgressReporter,
)
from migration_engine.persistence.store import InMemoryRunStore
from migration_engine.workers.batch import CancellationToken


class TestPhaseTransitions:
    """Phase state machine."""

    def test_completing_a_releases_b_and_c(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 100, complete_on_full=False)
        assert abc_tracker.get_phase("A").status == PhaseStatus.IN_PROGRESS

        ready = abc_tracker.complete_phase("A")

        assert ready == ["B", "C"]
        assert abc_tracker.next_ready_phases() == ["B", "C"]

    def test_reaching_100_completes_phase(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 100)

        phase = abc_tracker.get_phase("A")
        assert phase.status == PhaseStatus.COMPLETED
        assert phase.end_time is not None
        assert abc_tracker.next_ready_phases() == ["B", "C"]

    def test_starting_b_before_a_completes_fails(self, abc_tracker):
        with pytest.raises(InvalidTransition, match="waiting on A"):
            abc_tracker.start_phase("B")

        abc_tracker.start_phase("A")
        with pytest.raises(InvalidTransition):
            abc_tracker.start_phase("B")

        phase = abc_tracker.get_phase("B")
        assert phase.status == PhaseStatus.PENDING
        assert phase.start_time is None

    def test_start_requires_pending(self, abc_tracker):
        abc_tracker.start_phase("A")
        with pytest.raises(InvalidTransition):
            abc_tracker.start_phase("A")

    def test_progress_requires_running_phase(self, abc_tracker):
        with pytest.raises(InvalidTransition):
            abc_tracker.update_phase_progress("A", 10)

    def test_unknown_phase(self, abc_tracker):
        with pytest.raises(PhaseNotFoundError):
            abc_tracker.start_phase("Z")

    def test_initialize_twice_fails(self, abc_tracker, abc_phases):
        with pytest.raises(InvalidTransition):
            abc_tracker.initialize_migration("again", abc_phases)

    def test_progress_is_clamped(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", -20)
        assert abc_tracker.get_phase("A").progress == 0.0

        abc_tracker.update_phase_progress("A", 250, complete_on_full=False)
        assert abc_tracker.get_phase("A").progress == 100.0

    def test_progress_regression_is_ignored(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 60)
        abc_tracker.update_phase_progress("A", 40)
        assert abc_tracker.get_phase("A").progress == 60.0

    def test_metadata_merges_last_write_wins(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 10, {"tables": 3, "rows": 100})
        abc_tracker.update_phase_progress("A", 20, {"rows": 250})

        assert abc_tracker.get_phase("A").metadata == {"tables": 3, "rows": 250}

    def test_fail_phase_records_error_and_blocks_dependents(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.fail_phase("A", "disk full")

        phase = abc_tracker.get_phase("A")
        assert phase.status == PhaseStatus.FAILED
        assert phase.errors == ["disk full"]
        assert abc_tracker.next_ready_phases() == []
        assert abc_tracker.blocked_phases() == ["B", "C"]
        # Dependents are not cascaded
        assert abc_tracker.get_phase("B").status == PhaseStatus.PENDING
        assert abc_tracker.run.status == RunStatus.FAILED

        errors = [a for a in abc_tracker.get_alerts() if a.severity == AlertSeverity.ERROR]
        assert errors and "disk full" in errors[0].message

    def test_failed_phase_leaves_independent_branch_ready(self, tracker, phase_factory):
        tracker.initialize_migration("branches", [
            phase_factory("a"),
            phase_factory("b", ["a"]),
            phase_factory("x"),
        ])
        tracker.start_phase("a")
        tracker.fail_phase("a", "boom")
        assert tracker.next_ready_phases() == ["x"]

    def test_skip_only_from_pending(self, abc_tracker):
        abc_tracker.start_phase("A")
        with pytest.raises(InvalidTransition):
            abc_tracker.skip_phase("A")

    def test_skipped_phase_satisfies_dependents(self, abc_tracker):
        abc_tracker.skip_phase("A", reason="feature disabled")

        phase = abc_tracker.get_phase("A")
        assert phase.status == PhaseStatus.SKIPPED
        assert phase.progress == 100.0
        assert "Skipped: feature disabled" in phase.warnings
        assert abc_tracker.next_ready_phases() == ["B", "C"]

    def test_run_completes_when_all_phases_done(self, abc_tracker):
        abc_tracker.skip_phase("A")
        for phase_id in ("B", "C"):
            abc_tracker.start_phase(phase_id)
            abc_tracker.update_phase_progress(phase_id, 100)

        run = abc_tracker.run
        assert run.status == RunStatus.COMPLETED
        assert run.overall_progress == 100.0
        assert run.end_time is not None

    def test_retry_archives_attempt(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 40)
        abc_tracker.fail_phase("A", "timeout")

        phase = abc_tracker.retry_phase("A")

        assert phase.status == PhaseStatus.PENDING
        assert phase.progress == 0.0
        assert phase.attempt_number == 2
        assert phase.attempts[0].status == PhaseStatus.FAILED
        assert phase.attempts[0].progress == 40.0
        assert phase.errors == ["timeout"]

        abc_tracker.start_phase("A")
        assert abc_tracker.get_phase("A").status == PhaseStatus.IN_PROGRESS

    def test_retry_moves_worker_metadata_into_attempt(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 40, {"units_failed": 5, "units_total": 20, "owner": "ops"})
        abc_tracker.fail_phase("A", "5 of 20 units failed")
        assert abc_tracker.run.failed_units == 5

        phase = abc_tracker.retry_phase("A")
        abc_tracker.skip_phase("A", reason="handled by hand")

        assert phase.metadata == {"owner": "ops"}
        assert phase.attempts[0].metadata == {"units_failed": 5, "units_total": 20}
        assert abc_tracker.run.failed_units == 0
        assert abc_tracker.get_dashboard().overview.failed_units == 0

    def test_retry_requires_failed(self, abc_tracker):
        with pytest.raises(InvalidTransition, match="only failed phases"):
            abc_tracker.retry_phase("A")


class TestOverallProgress:
    """Overall progress is the mean of phase progresses."""

    def test_unstarted_phases_count_as_zero(self, abc_tracker):
        abc_tracker.start_phase("A")
        overall = abc_tracker.update_phase_progress("A", 60)
        assert overall == pytest.approx(20.0)

    @pytest.mark.parametrize("seed", range(10))
    def test_overall_equals_mean_and_is_idempotent(self, seed, tracker, phase_factory):
        rng = random.Random(seed)
        phases = [phase_factory(f"p{i}") for i in range(rng.randint(1, 8))]
        tracker.initialize_migration("mean", phases)
        for phase in phases:
            tracker.start_phase(phase.id)

        for _ in range(30):
            phase_id = rng.choice(phases).id
            value = rng.uniform(0, 99)
            overall = tracker.update_phase_progress(phase_id, value)
            again = tracker.update_phase_progress(phase_id, value)

            progresses = [phase.progress for phase in tracker.run.phases]
            assert overall == pytest.approx(sum(progresses) / len(progresses))
            assert again == overall
            assert tracker.run.overall_progress == pytest.approx(overall)

    def test_concurrent_writers_on_different_phases(self, tracker, phase_factory):
        phases = [phase_factory(f"p{i}") for i in range(8)]
        tracker.initialize_migration("threads", phases)
        for phase in phases:
            tracker.start_phase(phase.id)

        def drive(phase_id):
            for value in range(0, 91):
                tracker.update_phase_progress(phase_id, value)

        threads = [threading.Thread(target=drive, args=(phase.id,)) for phase in phases]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        run = tracker.run
        assert all(phase.progress == 90.0 for phase in run.phases)
        assert run.overall_progress == pytest.approx(90.0)


class TestSubTasks:
    """Sub-task transitions scoped to the parent phase."""

    @pytest.fixture
    def sub_task_tracker(self, tracker, phase_factory):
        tracker.initialize_migration("subs", [phase_factory("db", sub_tasks=["schema", "data"])])
        tracker.start_phase("db")
        return tracker

    def test_phase_progress_is_mean_of_sub_tasks(self, sub_task_tracker):
        sub_task_tracker.start_sub_task("db", "schema")
        sub_task_tracker.update_sub_task_progress("db", "schema", 50)

        assert sub_task_tracker.get_phase("db").progress == pytest.approx(25.0)

    def test_sub_task_requires_running_phase(self, tracker, phase_factory):
        tracker.initialize_migration("subs", [phase_factory("db", sub_tasks=["schema"])])
        with pytest.raises(InvalidTransition, match="phase db is pending"):
            tracker.start_sub_task("db", "schema")

    def test_unknown_sub_task(self, sub_task_tracker):
        with pytest.raises(SubTaskNotFoundError):
            sub_task_tracker.start_sub_task("db", "nope")

    def test_sub_task_failure_is_phase_warning(self, sub_task_tracker):
        sub_task_tracker.start_sub_task("db", "schema")
        sub_task_tracker.fail_sub_task("db", "schema", "lock timeout")

        phase = sub_task_tracker.get_phase("db")
        assert phase.status == PhaseStatus.IN_PROGRESS
        assert phase.get_sub_task("schema").status == PhaseStatus.FAILED
        assert any("lock timeout" in warning for warning in phase.warnings)
        assert phase.errors == []

        alert = sub_task_tracker.get_alerts(limit=1)[0]
        assert alert.severity == AlertSeverity.WARNING
        assert alert.sub_task_id == "schema"

    def test_completing_all_sub_tasks_completes_phase(self, sub_task_tracker):
        for sub_task_id in ("schema", "data"):
            sub_task_tracker.start_sub_task("db", sub_task_id)
            sub_task_tracker.update_sub_task_progress("db", sub_task_id, 100)

        phase = sub_task_tracker.get_phase("db")
        assert all(st.status == PhaseStatus.COMPLETED for st in phase.sub_tasks)
        assert phase.status == PhaseStatus.COMPLETED

    def test_skipped_sub_task_counts_as_done(self, sub_task_tracker):
        sub_task_tracker.skip_sub_task("db", "schema", reason="already applied")
        sub_task_tracker.start_sub_task("db", "data")
        sub_task_tracker.complete_sub_task("db", "data")

        assert sub_task_tracker.get_phase("db").status == PhaseStatus.COMPLETED


class TestPauseAndVerification:
    """Pause/resume and failed verification blocking completion."""

    def test_paused_run_rejects_new_phases(self, abc_tracker):
        abc_tracker.pause_migration("maintenance window closed")
        assert abc_tracker.run.status == RunStatus.PAUSED

        with pytest.raises(InvalidTransition, match="paused"):
            abc_tracker.start_phase("A")

        abc_tracker.resume_migration()
        abc_tracker.start_phase("A")
        assert abc_tracker.run.status == RunStatus.IN_PROGRESS

    def test_resume_requires_paused(self, abc_tracker):
        with pytest.raises(InvalidTransition):
            abc_tracker.resume_migration()

    def test_failed_verification_blocks_completion(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.record_verification_failure("A", "3 rows differ")

        abc_tracker.update_phase_progress("A", 100)
        assert abc_tracker.get_phase("A").status == PhaseStatus.IN_PROGRESS

        with pytest.raises(VerificationFailure):
            abc_tracker.complete_phase("A")

        abc_tracker.acknowledge_verification("A", note="rows are soft-deleted")
        abc_tracker.complete_phase("A")

        phase = abc_tracker.get_phase("A")
        assert phase.status == PhaseStatus.COMPLETED
        assert phase.metadata["verification_passed"] is False
        assert any("acknowledged" in warning for warning in phase.warnings)

    def test_acknowledge_requires_failed_verification(self, abc_tracker):
        abc_tracker.start_phase("A")
        with pytest.raises(InvalidTransition):
            abc_tracker.acknowledge_verification("A")

    def test_retry_clears_verification_flags(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.record_verification_failure("A", "mismatch")
        abc_tracker.fail_phase("A", "giving up")

        phase = abc_tracker.retry_phase("A")
        assert not phase.verification_failed


class TestAlerts:
    """Bounded alert ring."""

    def test_ring_keeps_most_recent(self, phase_factory):
        tracker = ProgressTracker(settings=EngineSettings(alert_capacity=5))
        tracker.initialize_migration("ring", [phase_factory("a")])

        for index in range(12):
            tracker.create_alert(AlertSeverity.INFO, f"alert {index}")

        alerts = tracker.get_alerts()
        assert len(alerts) == 5
        assert [a.message for a in alerts] == [f"alert {i}" for i in range(11, 6, -1)]
        assert len(tracker.run.alerts) == 5

    def test_alert_sinks_receive_alerts(self, tracker, phase_factory):
        sink = Mock()
        tracker.add_alert_sink(sink)
        tracker.initialize_migration("sinks", [phase_factory("a")])
        tracker.create_alert(AlertSeverity.WARNING, "slow copy", phase_id="a")

        notified = [call.args[0] for call in sink.notify.call_args_list]
        assert notified[-1].message == "slow copy"
        assert notified[-1].phase_id == "a"

    def test_failing_sink_does_not_break_tracker(self, tracker, phase_factory):
        sink = Mock()
        sink.notify.side_effect = RuntimeError("webhook down")
        tracker.add_alert_sink(sink)
        tracker.initialize_migration("sinks", [phase_factory("a")])

        tracker.start_phase("a")
        assert tracker.get_phase("a").status == PhaseStatus.IN_PROGRESS

    def test_alerts_are_immutable(self, abc_tracker):
        alert = abc_tracker.create_alert(AlertSeverity.INFO, "hello")
        with pytest.raises(ValidationError):
            alert.message = "changed"


class TestCallbacks:
    """Event callbacks run after each transition."""

    def test_events_for_phase_lifecycle(self, abc_tracker):
        events = []
        abc_tracker.add_callback(events.append)

        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 100)

        types = [event.event_type for event in events]
        assert types == [TrackerEventType.PHASE_STARTED, TrackerEventType.PHASE_COMPLETED]

    def test_callback_errors_are_contained(self, abc_tracker):
        abc_tracker.add_callback(Mock(side_effect=ValueError("bad callback")))
        abc_tracker.start_phase("A")
        assert abc_tracker.get_phase("A").status == PhaseStatus.IN_PROGRESS


class TestMetrics:
    """Metrics merge and operation accounting."""

    def test_update_metrics_merges_nested_shallowly(self, abc_tracker):
        abc_tracker.update_metrics({"resource_utilization": {"cpu_percent": 40.0, "memory_percent": 20.0}})
        abc_tracker.update_metrics({"resource_utilization": {"cpu_percent": 75.0}, "migration_speed": 10.0})

        metrics = abc_tracker.run.metrics
        assert metrics.resource_utilization.cpu_percent == 75.0
        assert metrics.resource_utilization.memory_percent == 20.0
        assert metrics.migration_speed == 10.0

    def test_update_metrics_rejects_unknown_fields(self, abc_tracker):
        with pytest.raises(ConfigurationError, match="Unknown metrics fields"):
            abc_tracker.update_metrics({"bogus": 1})

    def test_metrics_history_is_bounded(self, phase_factory):
        tracker = ProgressTracker(settings=EngineSettings(metrics_history_size=3))
        tracker.initialize_migration("hist", [phase_factory("a")])
        for value in range(5):
            tracker.update_metrics({"migration_speed": float(value)})

        history = tracker.get_metrics_history()
        assert [snapshot.migration_speed for snapshot in history] == [2.0, 3.0, 4.0]

    def test_record_operations(self, phase_factory):
        clock = iter([100.0, 110.0]).__next__
        tracker = ProgressTracker(settings=EngineSettings(cost_per_gb=2.0), monotonic=clock)
        tracker.initialize_migration("ops", [phase_factory("a")])

        tracker.record_operations(succeeded=90, failed=10, bytes_moved=BYTES_PER_GB, elapsed=10.0)
        metrics = tracker.record_operations(succeeded=10, failed=0, bytes_moved=BYTES_PER_GB, elapsed=10.0)

        assert metrics.successful_operations == 100
        assert metrics.failed_operations == 10
        assert metrics.error_rate == pytest.approx(10 / 110 * 100)
        assert metrics.total_data_migrated == 2 * BYTES_PER_GB
        assert metrics.cost_metrics.actual == pytest.approx(4.0)
        # Two batches of 10s ending at t=100 and t=110 span 20s
        assert metrics.migration_speed == pytest.approx(2 * BYTES_PER_GB / 20.0)


class TestDashboard:
    """Immutable dashboard snapshots."""

    def test_overview(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 100)
        abc_tracker.start_phase("B")
        abc_tracker.update_phase_progress("B", 50, {"units_failed": 2})

        dashboard = abc_tracker.get_dashboard(recent_alerts=3)
        overview = dashboard.overview

        assert overview.migration_id == "mig-abc"
        assert overview.current_phase == "B"
        assert overview.counts.completed == 1
        assert overview.counts.in_progress == 1
        assert overview.counts.pending == 1
        assert overview.overall_progress == pytest.approx(50.0)
        assert overview.failed_units == 2
        assert overview.estimated_completion is not None
        assert len(dashboard.recent_alerts) == 3
        assert [entry.phase_id for entry in dashboard.timeline] == ["A", "B", "C"]

    def test_no_estimate_before_progress(self, abc_tracker):
        assert abc_tracker.get_dashboard().overview.estimated_completion is None

    def test_dashboard_is_frozen_snapshot(self, abc_tracker):
        dashboard = abc_tracker.get_dashboard()
        with pytest.raises(ValidationError):
            dashboard.overview.overall_progress = 99.0

        abc_tracker.start_phase("A")
        assert dashboard.phases[0].status == PhaseStatus.PENDING

    def test_blocked_phases_in_overview(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.fail_phase("A", "boom")
        assert abc_tracker.get_dashboard().overview.blocked_phases == ["B", "C"]


class TestPersistence:
    """Runs are saved to the store and can be loaded back."""

    def test_transitions_are_persisted(self, abc_tracker, run_store):
        abc_tracker.start_phase("A")
        saved = run_store.load("mig-abc")
        assert saved.get_phase("A").status == PhaseStatus.IN_PROGRESS

    def test_load_migration_restores_state(self, abc_tracker, run_store, settings):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 100)
        abc_tracker.create_alert(AlertSeverity.WARNING, "persist me")

        restored = ProgressTracker(store=run_store, settings=settings)
        assert restored.load_migration("mig-abc")

        assert restored.get_phase("A").status == PhaseStatus.COMPLETED
        assert restored.next_ready_phases() == ["B", "C"]
        assert restored.get_alerts(limit=1)[0].message == "persist me"

    def test_load_unknown_migration(self, tracker):
        assert tracker.load_migration("nope") is False

    def test_progress_saves_are_throttled(self, abc_phases):
        store = InMemoryRunStore()
        times = iter([0.0, 100.0, 100.5, 101.0, 200.0])
        tracker = ProgressTracker(
            store=store,
            settings=EngineSettings(persist_interval_seconds=5.0),
            monotonic=lambda: next(times),
        )
        tracker.initialize_migration("throttle", abc_phases)  # t=0, forced
        tracker.start_phase("A")                              # t=100, forced
        tracker.update_phase_progress("A", 10)                # t=100.5, throttled
        tracker.update_phase_progress("A", 20)                # t=101, throttled
        assert store.load("throttle").get_phase("A").progress == 0.0

        tracker.flush()                                       # t=200, forced
        assert store.load("throttle").get_phase("A").progress == 20.0


class TestTrackerProgressReporter:
    """Forwarding worker progress into the tracker."""

    def test_report_does_not_complete_phase(self, abc_tracker):
        abc_tracker.start_phase("A")
        reporter = TrackerProgressReporter(abc_tracker)

        reporter.report("A", 100.0, {"units_total": 4})

        phase = abc_tracker.get_phase("A")
        assert phase.status == PhaseStatus.IN_PROGRESS
        assert phase.progress == 100.0
        assert phase.metadata["units_total"] == 4

    def test_report_on_failed_phase_cancels_token(self, abc_tracker):
        abc_tracker.start_phase("A")
        token = CancellationToken()
        reporter = TrackerProgressReporter(abc_tracker, token)
        abc_tracker.fail_phase("A", "operator stop")

        reporter.report("A", 50.0)

        assert token.cancelled
        assert abc_tracker.get_phase("A").progress == 0.0
