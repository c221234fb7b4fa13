"""
Custom exceptions for the migration engine.

This module defines the error taxonomy used by the phase graph, the
progress tracker, the batch executor and the data-plane workers.
"""

from typing import Any, Dict, Optional


class MigrationEngineError(Exception):
    """Base exception class for migration engine errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for display or persistence."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(MigrationEngineError):
    """Raised when the migration plan or a worker config is invalid."""
    pass


class PhaseNotFoundError(ConfigurationError):
    """Raised when a phase id is not part of the run."""

    def __init__(self, phase_id: str):
        super().__init__(
            f"Unknown phase: {phase_id}",
            details={"phase_id": phase_id}
        )
        self.phase_id = phase_id


class SubTaskNotFoundError(ConfigurationError):
    """Raised when a sub-task id is not part of its parent phase."""

    def __init__(self, phase_id: str, sub_task_id: str):
        super().__init__(
            f"Unknown sub-task {sub_task_id} in phase {phase_id}",
            details={"phase_id": phase_id, "sub_task_id": sub_task_id}
        )
        self.phase_id = phase_id
        self.sub_task_id = sub_task_id


class InvalidTransition(MigrationEngineError):
    """Raised when a state change is not allowed. No state is modified."""

    def __init__(
        self,
        entity: str,
        current: str,
        requested: str,
        reason: Optional[str] = None
    ):
        message = f"Cannot move {entity} from {current} to {requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            details={"entity": entity, "current": current, "requested": requested}
        )
        self.entity = entity
        self.current = current
        self.requested = requested


class VerificationFailure(MigrationEngineError):
    """Raised when completing a phase whose verification failed."""
    pass


class UnitIntegrityError(MigrationEngineError):
    """Raised by a unit function when a post-copy integrity check fails."""
    pass


class CollaboratorError(MigrationEngineError):
    """Raised when an external store (object store, cache, database) fails."""
    pass


class UnitFailure:
    """
    Record of one failed migration unit.

    Unit failures are data, not exceptions: the batch executor collects
    them and never raises them past its boundary.
    """

    __slots__ = ("unit_id", "message", "timeout", "error_type")

    def __init__(
        self,
        unit_id: str,
        message: str,
        timeout: bool = False,
        error_type: Optional[str] = None
    ):
        self.unit_id = unit_id
        self.message = message
        self.timeout = timeout
        self.error_type = error_type

    def __repr__(self) -> str:
        return f"UnitFailure(unit_id={self.unit_id!r}, message={self.message!r}, timeout={self.timeout})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnitFailure):
            return NotImplemented
        return (
            self.unit_id == other.unit_id
            and self.message == other.message
            and self.timeout == other.timeout
        )

    def __str__(self) -> str:
        prefix = "timeout" if self.timeout else "failed"
        return f"{self.unit_id}: {prefix}: {self.message}"
