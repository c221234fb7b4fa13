"""Utility modules for the migration engine."""

from migration_engine.utils.logging import AuditLogger, get_logger, setup_logging

__all__ = ["AuditLogger", "get_logger", "setup_logging"]
