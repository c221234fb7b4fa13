"""
Configuration models for the migration engine.

Engine-wide settings and the per-worker configs. Every model can be
built from a plan file section or from environment variables.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = env.get(name)
    return int(value) if value not in (None, "") else default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    return float(value) if value not in (None, "") else default


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class EngineSettings(BaseModel):
    """Engine-wide settings."""
    concurrency: int = Field(default=50, ge=1)
    unit_timeout_seconds: float = Field(default=30.0, gt=0)
    alert_capacity: int = Field(default=100, ge=1)
    recent_alerts: int = Field(default=10, ge=1)
    metrics_history_size: int = Field(default=60, ge=0)
    persist_interval_seconds: float = Field(default=2.0, ge=0)
    resource_sample_interval_seconds: float = Field(default=15.0, gt=0)
    cost_per_gb: float = Field(default=0.0, ge=0)
    state_dir: str = ".migration-state"
    log_level: str = "INFO"
    audit_log_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "EngineSettings":
        env = os.environ if env is None else env
        values: Dict[str, Any] = {
            "concurrency": _env_int(env, "MIGRATION_CONCURRENCY", 50),
            "unit_timeout_seconds": _env_float(env, "MIGRATION_UNIT_TIMEOUT", 30.0),
            "alert_capacity": _env_int(env, "MIGRATION_ALERT_CAPACITY", 100),
            "cost_per_gb": _env_float(env, "MIGRATION_COST_PER_GB", 0.0),
            "state_dir": env.get("MIGRATION_STATE_DIR", ".migration-state"),
            "log_level": env.get("MIGRATION_LOG_LEVEL", "INFO"),
            "audit_log_file": env.get("MIGRATION_AUDIT_LOG") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class WorkerType(str, Enum):
    """Data-plane worker types."""
    OBJECT_STORAGE = "object_storage"
    CACHE = "cache"
    RELATIONAL = "relational"


class WorkerConfig(BaseModel):
    """Settings shared by every data-plane worker."""
    batch_size: int = Field(default=50, ge=1)
    concurrency: Optional[int] = Field(default=None, ge=1)
    unit_timeout_seconds: float = Field(default=30.0, gt=0)
    sample_size: Optional[int] = Field(default=100, ge=1)

    model_config = ConfigDict(extra="forbid")


class ObjectStorageMigrationConfig(WorkerConfig):
    """Bucket-to-bucket object copy."""
    source_bucket: str
    destination_bucket: str
    prefix: str = ""
    verify_integrity: bool = True
    preserve_metadata: bool = True
    delete_source: bool = False

    @field_validator("source_bucket", "destination_bucket")
    @classmethod
    def bucket_must_not_be_empty(cls, v):
        if not v or not v.strip():
            raise ValueError("Bucket name cannot be empty")
        return v.strip()

    @field_validator("destination_bucket")
    @classmethod
    def buckets_must_differ(cls, v, info):
        if info.data.get("source_bucket") == v:
            raise ValueError("Source and destination buckets must be different")
        return v

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ObjectStorageMigrationConfig":
        env = os.environ if env is None else env
        return cls(
            source_bucket=env.get("SOURCE_S3_BUCKET", ""),
            destination_bucket=env.get("TARGET_S3_BUCKET", ""),
            prefix=env.get("S3_MIGRATION_PREFIX", ""),
            batch_size=_env_int(env, "S3_MIGRATION_BATCH_SIZE", 50),
            verify_integrity=_env_bool(env, "S3_VERIFY_INTEGRITY", True),
            preserve_metadata=_env_bool(env, "S3_PRESERVE_METADATA", True),
            delete_source=_env_bool(env, "S3_DELETE_SOURCE", False),
        )


class CacheSourceSpec(BaseModel):
    """A table the cache is rebuilt from."""
    table: str
    key_prefix: str
    key_column: str = "id"
    ttl: Optional[int] = Field(default=None, ge=1)
    category: Optional[str] = None


class CacheRebuildConfig(WorkerConfig):
    """Cache rebuild from the source of truth, or key copy from the old cache."""
    batch_size: int = Field(default=100, ge=1)
    unit_timeout_seconds: float = Field(default=5.0, gt=0)
    pattern: str = "*"
    rebuild_from_source_of_truth: bool = True
    preserve_sessions: bool = False
    warm_up: Dict[str, Any] = Field(default_factory=dict)
    warm_up_ttl: Optional[int] = Field(default=3600, ge=1)
    sources: List[CacheSourceSpec] = Field(default_factory=list)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "CacheRebuildConfig":
        env = os.environ if env is None else env
        return cls(
            pattern=env.get("CACHE_REBUILD_PATTERN", "*"),
            batch_size=_env_int(env, "CACHE_REBUILD_BATCH_SIZE", 100),
            rebuild_from_source_of_truth=_env_bool(env, "CACHE_REBUILD_FROM_DATABASE", True),
            preserve_sessions=_env_bool(env, "CACHE_PRESERVE_SESSIONS", False),
        )


class ExistingTablePolicy(str, Enum):
    """What the relational worker does with a non-empty destination table."""
    SKIP = "skip"
    RESUME = "resume"


class RelationalMigrationConfig(WorkerConfig):
    """Table-by-table row copy in foreign-key order."""
    batch_size: int = Field(default=1000, ge=1)
    tables: Optional[List[str]] = None
    exclude_tables: List[str] = Field(default_factory=list)
    key_columns: Dict[str, str] = Field(default_factory=dict)
    default_key_column: str = "id"
    existing_table_policy: ExistingTablePolicy = ExistingTablePolicy.SKIP
    full_diff_tables: List[str] = Field(default_factory=list)

    def key_column(self, table: str) -> str:
        return self.key_columns.get(table, self.default_key_column)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RelationalMigrationConfig":
        env = os.environ if env is None else env
        tables = env.get("DB_MIGRATION_TABLES")
        return cls(
            batch_size=_env_int(env, "DB_MIGRATION_BATCH_SIZE", 1000),
            tables=[t.strip() for t in tables.split(",") if t.strip()] if tables else None,
            existing_table_policy=env.get("DB_EXISTING_TABLE_POLICY", ExistingTablePolicy.SKIP.value),
        )
