"""
Dashboard snapshot models.

A Dashboard is an immutable copy of the run taken under the tracker
lock; mutating it never affects the live run.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from migration_engine.models.phase import MigrationPhase, PhaseStatus
from migration_engine.models.run import Alert, MetricsSnapshot, RunStatus


class PhaseCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class DashboardOverview(BaseModel):
    model_config = ConfigDict(frozen=True)

    migration_id: str
    status: RunStatus
    overall_progress: float
    current_phase: Optional[str] = None
    counts: PhaseCounts
    start_time: datetime
    end_time: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    failed_units: int = 0
    blocked_phases: List[str] = Field(default_factory=list)


class TimelineEntry(BaseModel):
    """Start/end for one phase; estimated where the phase has not happened yet."""
    model_config = ConfigDict(frozen=True)

    phase_id: str
    name: str
    status: PhaseStatus
    progress: float
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    start_estimated: bool = False
    end_estimated: bool = False


class ResourceUsagePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    cpu_percent: float
    memory_percent: float
    network_bytes_per_sec: float
    storage_bytes: int


class Dashboard(BaseModel):
    model_config = ConfigDict(frozen=True)

    overview: DashboardOverview
    phases: List[MigrationPhase]
    recent_alerts: List[Alert]
    metrics: MetricsSnapshot
    timeline: List[TimelineEntry]
    resource_usage: List[ResourceUsagePoint] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=datetime.utcnow)
