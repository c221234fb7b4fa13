"""
Migration Engine

Orchestrates multi-phase infrastructure migrations: a dependency-ordered
phase graph, a progress tracker with alerts and metrics, and data-plane
workers for object storage, caches and relational data.
"""

__version__ = "0.1.0"
__author__ = "Migration Engine Team"

from migration_engine.core.exceptions import (
    ConfigurationError,
    InvalidTransition,
    MigrationEngineError,
    VerificationFailure,
)
from migration_engine.models.phase import MigrationPhase, PhaseStatus, SubTask
from migration_engine.models.plan import MigrationPlan
from migration_engine.models.run import MigrationRun
from migration_engine.monitoring.progress_tracker import ProgressTracker
from migration_engine.orchestrator.orchestrator import MigrationOrchestrator

__all__ = [
    "ConfigurationError",
    "InvalidTransition",
    "MigrationEngineError",
    "MigrationOrchestrator",
    "MigrationPhase",
    "MigrationPlan",
    "MigrationRun",
    "PhaseStatus",
    "ProgressTracker",
    "SubTask",
    "VerificationFailure",
]
