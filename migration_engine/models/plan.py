"""
Migration plan file models.

A plan file (YAML or JSON) names the migration, overrides engine
settings, and lists the phases in declared order. A phase may carry a
``worker`` section that binds it to a data-plane worker; phases without
one are manual and are completed by the operator.
"""

import json
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from migration_engine.core.exceptions import ConfigurationError
from migration_engine.models.config import (
    CacheRebuildConfig,
    ObjectStorageMigrationConfig,
    RelationalMigrationConfig,
)
from migration_engine.models.phase import MigrationPhase, SubTask


class ObjectStorageWorkerSpec(BaseModel):
    type: Literal["object_storage"] = "object_storage"
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    profile: Optional[str] = None
    config: ObjectStorageMigrationConfig


class CacheWorkerSpec(BaseModel):
    type: Literal["cache"] = "cache"
    destination_url: str
    source_url: Optional[str] = None
    database_url: Optional[str] = None
    config: CacheRebuildConfig = Field(default_factory=CacheRebuildConfig)


class RelationalWorkerSpec(BaseModel):
    type: Literal["relational"] = "relational"
    source_url: str
    destination_url: str
    config: RelationalMigrationConfig = Field(default_factory=RelationalMigrationConfig)


WorkerSpec = Annotated[
    Union[ObjectStorageWorkerSpec, CacheWorkerSpec, RelationalWorkerSpec],
    Field(discriminator="type"),
]


class SubTaskDefinition(BaseModel):
    id: str
    name: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PhaseDefinition(BaseModel):
    """One phase as written in the plan file."""
    id: str
    name: str
    description: str = ""
    dependencies: List[str] = Field(default_factory=list)
    estimated_duration_minutes: float = Field(default=0.0, ge=0)
    sub_tasks: List[SubTaskDefinition] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    worker: Optional[WorkerSpec] = None

    @field_validator("id")
    @classmethod
    def id_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("Phase id cannot be empty")
        return v.strip()

    def to_phase(self) -> MigrationPhase:
        return MigrationPhase(
            id=self.id,
            name=self.name,
            description=self.description,
            dependencies=list(self.dependencies),
            estimated_duration_minutes=self.estimated_duration_minutes,
            sub_tasks=[
                SubTask(id=st.id, name=st.name, metadata=dict(st.metadata))
                for st in self.sub_tasks
            ],
            metadata=dict(self.metadata),
        )


class MigrationPlan(BaseModel):
    """A complete migration plan."""
    migration_id: str
    description: str = ""
    settings: Dict[str, Any] = Field(default_factory=dict)
    phases: List[PhaseDefinition] = Field(default_factory=list)

    def to_phases(self) -> List[MigrationPhase]:
        return [definition.to_phase() for definition in self.phases]

    def get_phase(self, phase_id: str) -> Optional[PhaseDefinition]:
        for definition in self.phases:
            if definition.id == phase_id:
                return definition
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationPlan":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid migration plan: {e.error_count()} error(s)",
                details={"errors": e.errors(include_url=False)}
            ) from e

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "MigrationPlan":
        """Load a plan from a YAML or JSON file."""
        plan_path = Path(path)
        if not plan_path.exists():
            raise ConfigurationError(f"Plan file not found: {plan_path}")

        try:
            with open(plan_path, "r") as f:
                if plan_path.suffix.lower() == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot parse plan file {plan_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Plan file {plan_path} must contain a mapping")
        return cls.from_dict(data)
