"""
Logging setup for the migration engine.

Provides rich console logging for the CLI, optional rotating file logs
with structured JSON records, and an audit logger that records every
phase transition and alert of a migration run.
"""

import json
import logging
import logging.handlers
import os
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler


ROOT_LOGGER_NAME = "migration_engine"


class LogCategory(str, Enum):
    """Categories for structured logging."""
    SYSTEM = "system"
    MIGRATION = "migration"
    VERIFICATION = "verification"
    AUDIT = "audit"
    CLI = "cli"


@dataclass
class LogEntry:
    """Structured log entry with metadata."""
    timestamp: datetime = field(default_factory=datetime.utcnow)
    level: str = "INFO"
    category: LogCategory = LogCategory.SYSTEM
    message: str = ""
    migration_id: Optional[str] = None
    phase_id: Optional[str] = None
    event_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


_RESERVED_RECORD_KEYS = frozenset([
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "exc_info", "exc_text",
    "stack_info", "taskName", "message", "asctime",
])


class StructuredFormatter(logging.Formatter):
    """Formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = getattr(record, "log_entry", None)
        if isinstance(log_entry, LogEntry):
            return log_entry.to_json()

        log_entry = LogEntry(
            timestamp=datetime.utcfromtimestamp(record.created),
            level=record.levelname,
            message=record.getMessage(),
            metadata={
                "logger": record.name,
                "function": record.funcName,
                "line": record.lineno,
            }
        )
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry.metadata[key] = value
        if record.exc_info:
            log_entry.metadata["exception"] = self.formatException(record.exc_info)

        return log_entry.to_json()


class AuditLogger:
    """Writes one structured record per run event (transitions, alerts)."""

    def __init__(self, log_file: Optional[str] = None, migration_id: Optional[str] = None):
        self.migration_id = migration_id
        self.logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.audit")
        self.logger.setLevel(logging.INFO)

        if log_file and not self._has_file_handler(log_file):
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=10
            )
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)

    def _has_file_handler(self, log_file: str) -> bool:
        target = os.path.abspath(log_file)
        return any(
            getattr(handler, "baseFilename", None) == target
            for handler in self.logger.handlers
        )

    def log_event(
        self,
        event_type: str,
        phase_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Log an audit event."""
        log_entry = LogEntry(
            level="INFO",
            category=LogCategory.AUDIT,
            message=f"Audit event: {event_type}",
            migration_id=self.migration_id,
            phase_id=phase_id,
            event_type=event_type,
            metadata=details or {}
        )
        self.logger.info(log_entry.message, extra={"log_entry": log_entry})


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    structured_logging: bool = False,
    max_log_size: int = 50 * 1024 * 1024,  # 50MB
    backup_count: int = 5,
    console: Optional[Console] = None
) -> logging.Logger:
    """
    Set up logging for the migration engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path, rotated by size
        rich_console: Whether to use the Rich console handler
        structured_logging: Whether to emit structured JSON records
        max_log_size: Maximum log file size before rotation
        backup_count: Number of rotated files to keep
        console: Console the Rich handler writes to

    Returns:
        The package root logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)
    logger.handlers.clear()

    if rich_console and not structured_logging:
        console_handler: logging.Handler = RichHandler(
            console=console or Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True
        )
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        if structured_logging:
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
    # Audit records propagate here at INFO
    console_handler.setLevel(log_level)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_log_size,
            backupCount=backup_count
        )
        if structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
        file_handler.setLevel(log_level)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
