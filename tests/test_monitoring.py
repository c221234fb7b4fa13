"""
Tests for dashboard rendering, alert sinks, resource sampling and logging.
"""

import io
import json
import logging
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from migration_engine.models.run import Alert, AlertSeverity
from migration_engine.monitoring import resources
from migration_engine.monitoring.alerts import ConsoleAlertSink, LoggingAlertSink
from migration_engine.monitoring.dashboard import DashboardRenderer, build_timeline, format_bytes
from migration_engine.monitoring.resources import ResourceMonitor, ResourceSampler
from migration_engine.utils.logging import ROOT_LOGGER_NAME, AuditLogger, get_logger, setup_logging

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_console():
    return Console(file=io.StringIO(), width=160, color_system=None)


class TestFormatBytes:
    """Human readable sizes."""

    @pytest.mark.parametrize("size,expected", [
        (0, "0 B"),
        (512, "512 B"),
        (2048, "2.0 KB"),
        (5 * 1024 ** 3, "5.0 GB"),
        (3 * 1024 ** 5, "3072.0 TB"),
    ])
    def test_format(self, size, expected):
        assert format_bytes(size) == expected


class TestTimeline:
    """Start and end times for the phase timeline."""

    def test_pending_phases_follow_their_dependencies(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 50)

        timeline = {entry.phase_id: entry for entry in build_timeline(abc_tracker.run, abc_tracker.graph, now=NOW)}

        assert timeline["A"].end == NOW + timedelta(minutes=5)
        assert timeline["A"].end_estimated
        assert not timeline["A"].start_estimated
        assert timeline["B"].start == NOW + timedelta(minutes=5)
        assert timeline["B"].end == NOW + timedelta(minutes=15)
        assert timeline["B"].start_estimated

    def test_blocked_phases_have_no_estimate(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.fail_phase("A", "disk full")

        timeline = build_timeline(abc_tracker.run, abc_tracker.graph, now=NOW)

        assert [entry.phase_id for entry in timeline] == ["A", "B", "C"]
        assert timeline[0].end is not None
        assert timeline[1].start is None and timeline[1].end is None
        assert timeline[2].start is None


class TestDashboardRenderer:
    """Rich rendering of a dashboard snapshot."""

    def test_render(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.update_phase_progress("A", 30)
        abc_tracker.create_alert(AlertSeverity.WARNING, "slow [bucket] listing", phase_id="A")
        console = make_console()

        DashboardRenderer(console).render(abc_tracker.get_dashboard())

        output = console.file.getvalue()
        assert "Migration mig-abc" in output
        assert "Phase A" in output
        assert "30.0%" in output
        assert "slow [bucket] listing" in output

    def test_render_shows_failed_verification_and_blocked_phases(self, abc_tracker):
        abc_tracker.start_phase("A")
        abc_tracker.record_verification_failure("A", "3 objects differ")
        console = make_console()

        DashboardRenderer(console).render(abc_tracker.get_dashboard())
        assert "verification failed" in console.file.getvalue()

        abc_tracker.fail_phase("A", "given up")
        console = make_console()
        DashboardRenderer(console).render(abc_tracker.get_dashboard())
        assert "Blocked by failure: B, C" in console.file.getvalue()


class TestAlertSinks:
    """Logging and console alert sinks."""

    def test_logging_sink_uses_severity_level(self, caplog):
        log = logging.getLogger("tests.alerts")
        caplog.set_level(logging.INFO, logger="tests.alerts")
        sink = LoggingAlertSink(log)

        sink.notify(Alert(severity=AlertSeverity.ERROR, message="copy failed", phase_id="media"))
        sink.notify(Alert(severity=AlertSeverity.INFO, message="started"))

        assert [(r.levelno, r.getMessage()) for r in caplog.records] == [
            (logging.ERROR, "[media] copy failed"),
            (logging.INFO, "started"),
        ]

    def test_console_sink_filters_by_severity(self):
        console = make_console()
        sink = ConsoleAlertSink(console, min_severity=AlertSeverity.WARNING)

        sink.notify(Alert(severity=AlertSeverity.INFO, message="chatty"))
        sink.notify(Alert(severity=AlertSeverity.WARNING, message="slow"))

        output = console.file.getvalue()
        assert "chatty" not in output
        assert "WARNING" in output and "slow" in output

    def test_tracker_dispatches_to_sinks(self, abc_tracker):
        sink = MagicMock()
        abc_tracker.add_alert_sink(sink)

        abc_tracker.create_alert(AlertSeverity.INFO, "hello")

        alert = sink.notify.call_args.args[0]
        assert alert.message == "hello"


@pytest.fixture
def fake_psutil(monkeypatch):
    fake = MagicMock()
    fake.cpu_percent.return_value = 12.5
    fake.virtual_memory.return_value = SimpleNamespace(percent=40.0)
    fake.net_io_counters.side_effect = [
        SimpleNamespace(bytes_sent=100, bytes_recv=200),
        SimpleNamespace(bytes_sent=300, bytes_recv=400),
    ]
    fake.disk_usage.return_value = SimpleNamespace(used=4096)
    monkeypatch.setattr(resources, "psutil", fake)
    clock = MagicMock()
    clock.monotonic.side_effect = [10.0, 12.0]
    monkeypatch.setattr(resources, "time", clock)
    return fake


class TestResourceSampling:
    """psutil sampling."""

    def test_network_rate_is_delta_between_samples(self, fake_psutil):
        sampler = ResourceSampler("/data")

        first = sampler.sample()
        second = sampler.sample()

        assert first.network_bytes_per_sec == 0.0
        assert second.network_bytes_per_sec == pytest.approx(200.0)
        assert second.cpu_percent == 12.5
        assert second.memory_percent == 40.0
        assert second.storage_bytes == 4096
        fake_psutil.disk_usage.assert_called_with("/data")

    def test_disk_errors_report_zero(self, fake_psutil):
        fake_psutil.disk_usage.side_effect = OSError("gone")
        assert ResourceSampler("/missing").sample().storage_bytes == 0

    def test_monitor_pushes_into_tracker(self, fake_psutil, abc_tracker):
        monitor = ResourceMonitor(abc_tracker, ResourceSampler())

        monitor.sample_once()

        utilization = abc_tracker.run.metrics.resource_utilization
        assert utilization.cpu_percent == 12.5
        assert utilization.storage_bytes == 4096


@pytest.fixture
def restore_loggers():
    root = logging.getLogger(ROOT_LOGGER_NAME)
    audit = logging.getLogger(f"{ROOT_LOGGER_NAME}.audit")
    saved = (root.level, list(root.handlers), list(audit.handlers))
    yield
    for logger in (root, audit):
        for handler in logger.handlers:
            if handler not in saved[1] + saved[2]:
                handler.close()
    root.setLevel(saved[0])
    root.handlers[:] = saved[1]
    audit.handlers[:] = saved[2]


class TestLogging:
    """Logging setup and the audit log."""

    def test_structured_file_logging(self, tmp_path, restore_loggers):
        log_file = tmp_path / "logs" / "engine.log"

        logger = setup_logging(level="warning", log_file=str(log_file), structured_logging=True)
        get_logger("tests").info("not written")
        get_logger("tests").warning("disk almost full")
        for handler in logger.handlers:
            handler.flush()

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert len(records) == 1
        assert records[0]["level"] == "WARNING"
        assert records[0]["message"] == "disk almost full"
        assert records[0]["metadata"]["logger"] == "migration_engine.tests"

    def test_audit_events(self, tmp_path, restore_loggers):
        log_file = tmp_path / "audit.log"
        audit = AuditLogger(str(log_file), migration_id="mig-1")
        AuditLogger(str(log_file), migration_id="mig-1")

        audit.log_event("phase_started", phase_id="A", details={"attempt": 1})
        for handler in audit.logger.handlers:
            handler.flush()

        lines = log_file.read_text().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["category"] == "audit"
        assert record["event_type"] == "phase_started"
        assert record["migration_id"] == "mig-1"
        assert record["phase_id"] == "A"
        assert record["metadata"] == {"attempt": 1}

    def test_tracker_writes_transitions_to_audit_log(self, tmp_path, restore_loggers, abc_phases, settings):
        from migration_engine.monitoring.progress_tracker import ProgressTracker

        log_file = tmp_path / "audit.log"
        tracker = ProgressTracker(settings=settings, audit_logger=AuditLogger(str(log_file), migration_id="mig-abc"))
        tracker.initialize_migration("mig-abc", abc_phases)
        tracker.start_phase("A")
        for handler in logging.getLogger(f"{ROOT_LOGGER_NAME}.audit").handlers:
            handler.flush()

        events = [json.loads(line)["event_type"] for line in log_file.read_text().splitlines()]
        assert events[:2] == ["migration_initialized", "phase_started"]
