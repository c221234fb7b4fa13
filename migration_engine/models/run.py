"""
Run-level models: alerts, metrics snapshots and the migration run itself.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from migration_engine.models.phase import MigrationPhase, PhaseStatus


class RunStatus(str, Enum):
    """Overall migration run status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Alert(BaseModel):
    """An append-only alert record."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    severity: AlertSeverity
    message: str
    phase_id: Optional[str] = None
    sub_task_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"frozen": True}


class ResourceUtilization(BaseModel):
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    network_bytes_per_sec: float = 0.0
    storage_bytes: int = 0


class CostMetrics(BaseModel):
    estimated: float = 0.0
    actual: float = 0.0
    per_gb: float = 0.0


class MetricsSnapshot(BaseModel):
    """Latest metrics for a run. Overwritten field by field on update."""
    total_data_migrated: int = 0
    migration_speed: float = 0.0  # bytes/second
    error_rate: float = 0.0  # percent
    successful_operations: int = 0
    failed_operations: int = 0
    average_operation_time: float = 0.0  # seconds
    resource_utilization: ResourceUtilization = Field(default_factory=ResourceUtilization)
    cost_metrics: CostMetrics = Field(default_factory=CostMetrics)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class MigrationRun(BaseModel):
    """The full state of one migration, keyed by migration id."""
    migration_id: str
    phases: List[MigrationPhase] = Field(default_factory=list)
    status: RunStatus = RunStatus.PENDING
    start_time: datetime = Field(default_factory=datetime.utcnow)
    end_time: Optional[datetime] = None
    overall_progress: float = 0.0
    alerts: List[Alert] = Field(default_factory=list)
    alert_capacity: int = 100
    metrics: MetricsSnapshot = Field(default_factory=MetricsSnapshot)
    metrics_history: List[MetricsSnapshot] = Field(default_factory=list)

    def get_phase(self, phase_id: str) -> Optional[MigrationPhase]:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def count_by_status(self, status: PhaseStatus) -> int:
        return sum(1 for phase in self.phases if phase.status == status)

    @property
    def has_started(self) -> bool:
        return any(phase.start_time is not None for phase in self.phases)

    @property
    def failed_units(self) -> int:
        return sum(int(phase.metadata.get("units_failed", 0)) for phase in self.phases)
