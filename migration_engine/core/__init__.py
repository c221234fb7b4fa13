"""Core error types shared across the migration engine."""

from migration_engine.core.exceptions import (
    CollaboratorError,
    ConfigurationError,
    InvalidTransition,
    MigrationEngineError,
    PhaseNotFoundError,
    SubTaskNotFoundError,
    UnitFailure,
    UnitIntegrityError,
    VerificationFailure,
)

__all__ = [
    "CollaboratorError",
    "ConfigurationError",
    "InvalidTransition",
    "MigrationEngineError",
    "PhaseNotFoundError",
    "SubTaskNotFoundError",
    "UnitFailure",
    "UnitIntegrityError",
    "VerificationFailure",
]
