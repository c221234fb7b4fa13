"""Progress tracking, alerting, estimation and dashboard rendering."""

from migration_engine.monitoring.alerts import AlertSink, ConsoleAlertSink, LoggingAlertSink
from migration_engine.monitoring.dashboard import DashboardRenderer, build_timeline
from migration_engine.monitoring.estimator import CompletionEstimate, CompletionEstimator, estimate_completion
from migration_engine.monitoring.progress_tracker import (
    ProgressTracker,
    TrackerEvent,
    TrackerEventType,
    TrackerProgressReporter,
)
from migration_engine.monitoring.resources import ResourceMonitor, ResourceSampler

__all__ = [
    "AlertSink",
    "CompletionEstimate",
    "CompletionEstimator",
    "ConsoleAlertSink",
    "DashboardRenderer",
    "LoggingAlertSink",
    "ProgressTracker",
    "ResourceMonitor",
    "ResourceSampler",
    "TrackerEvent",
    "TrackerEventType",
    "TrackerProgressReporter",
    "build_timeline",
    "estimate_completion",
]
