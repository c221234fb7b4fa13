"""
Phase models for the migration engine.

A migration is an ordered list of phases. Each phase has sub-tasks and
dependencies on other phases. The progress tracker is the only code
that mutates these models while a run is active.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TypedDict

from pydantic import BaseModel, Field, field_validator


class PhaseStatus(str, Enum):
    """Phase and sub-task status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (PhaseStatus.COMPLETED, PhaseStatus.FAILED, PhaseStatus.SKIPPED)

    @property
    def satisfies_dependency(self) -> bool:
        return self in (PhaseStatus.COMPLETED, PhaseStatus.SKIPPED)


# Version of the worker metadata keys below.
WORKER_METADATA_VERSION = 1


class WorkerMetadata(TypedDict, total=False):
    """Keys a data-plane worker reports into phase metadata."""
    metadata_version: int
    worker_type: str
    units_total: int
    units_migrated: int
    units_failed: int
    units_skipped: int
    bytes_total: int
    bytes_migrated: int
    rows_total: int
    rows_migrated: int
    categories: Dict[str, int]
    skipped_tables: List[str]
    verification_passed: bool


WORKER_METADATA_KEYS = frozenset(WorkerMetadata.__annotations__)


class SubTask(BaseModel):
    """A trackable piece of work inside a phase."""
    id: str
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    progress: float = 0.0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PhaseAttempt(BaseModel):
    """Archived state of a phase attempt, created on retry."""
    attempt: int
    status: PhaseStatus
    progress: float
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    archived_at: datetime = Field(default_factory=datetime.utcnow)


class MigrationPhase(BaseModel):
    """A top-level, dependency-ordered unit of the migration."""
    id: str
    name: str
    description: str = ""
    status: PhaseStatus = PhaseStatus.PENDING
    progress: float = 0.0
    sub_tasks: List[SubTask] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    estimated_duration_minutes: float = 0.0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    verification_failed: bool = False
    verification_acknowledged: bool = False
    attempts: List[PhaseAttempt] = Field(default_factory=list)

    @field_validator("progress")
    @classmethod
    def validate_progress(cls, v):
        if v < 0 or v > 100:
            raise ValueError("Progress must be between 0 and 100")
        return v

    @field_validator("estimated_duration_minutes")
    @classmethod
    def validate_duration(cls, v):
        if v < 0:
            raise ValueError("Estimated duration cannot be negative")
        return v

    def get_sub_task(self, sub_task_id: str) -> Optional[SubTask]:
        for sub_task in self.sub_tasks:
            if sub_task.id == sub_task_id:
                return sub_task
        return None

    @property
    def attempt_number(self) -> int:
        return len(self.attempts) + 1

    @property
    def actual_duration_minutes(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds() / 60
        return None
