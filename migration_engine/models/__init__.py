"""Data models for the migration engine."""

from migration_engine.models.config import (
    CacheRebuildConfig,
    EngineSettings,
    ExistingTablePolicy,
    ObjectStorageMigrationConfig,
    RelationalMigrationConfig,
    WorkerType,
)
from migration_engine.models.phase import (
    MigrationPhase,
    PhaseAttempt,
    PhaseStatus,
    SubTask,
    WorkerMetadata,
)
from migration_engine.models.plan import MigrationPlan, PhaseDefinition
from migration_engine.models.run import (
    Alert,
    AlertSeverity,
    CostMetrics,
    MetricsSnapshot,
    MigrationRun,
    ResourceUtilization,
    RunStatus,
)

__all__ = [
    "Alert",
    "AlertSeverity",
    "CacheRebuildConfig",
    "CostMetrics",
    "EngineSettings",
    "ExistingTablePolicy",
    "MetricsSnapshot",
    "MigrationPhase",
    "MigrationPlan",
    "MigrationRun",
    "ObjectStorageMigrationConfig",
    "PhaseAttempt",
    "PhaseDefinition",
    "PhaseStatus",
    "RelationalMigrationConfig",
    "ResourceUtilization",
    "RunStatus",
    "SubTask",
    "WorkerMetadata",
    "WorkerType",
]
