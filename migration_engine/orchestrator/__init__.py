"""Phase scheduling and execution."""

from migration_engine.orchestrator.orchestrator import MigrationOrchestrator, PhaseOutcome, RunSummary

__all__ = ["MigrationOrchestrator", "PhaseOutcome", "RunSummary"]
