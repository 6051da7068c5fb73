"""
Logging setup for the IaC Migrator.

This module provides console logging through Rich, optional rotating file
logging, structured JSON output, and a per-migration logger that attaches
step and checkpoint metadata to every record.
"""

import json
import logging
import logging.handlers
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler


ROOT_LOGGER_NAME = "iac_migrator"

_RESERVED_RECORD_KEYS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'getMessage',
    'exc_info', 'exc_text', 'stack_info', 'taskName', 'message', 'log_entry',
}


class LogLevel(str, Enum):
    """Log levels for structured logging."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogCategory(str, Enum):
    """Categories for structured logging."""
    SYSTEM = "system"
    MIGRATION = "migration"
    STATE = "state"
    CHECKPOINT = "checkpoint"
    ROLLBACK = "rollback"
    VERIFICATION = "verification"
    CLI = "cli"


@dataclass
class LogEntry:
    """Structured log entry with metadata."""
    timestamp: datetime = field(default_factory=datetime.now)
    level: LogLevel = LogLevel.INFO
    category: LogCategory = LogCategory.SYSTEM
    message: str = ""
    migration_id: Optional[str] = None
    step: Optional[str] = None
    duration: Optional[float] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert log entry to dictionary."""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        data['level'] = self.level.value
        data['category'] = self.category.value
        return data

    def to_json(self) -> str:
        """Convert log entry to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class StructuredFormatter(logging.Formatter):
    """Formatter for structured JSON logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_entry = getattr(record, 'log_entry', None)

        if log_entry and isinstance(log_entry, LogEntry):
            return log_entry.to_json()

        log_entry = LogEntry(
            timestamp=datetime.fromtimestamp(record.created),
            level=LogLevel(record.levelname),
            message=record.getMessage(),
            metadata={
                'logger': record.name,
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
            }
        )

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_entry.metadata[key] = value

        return log_entry.to_json()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    rich_console: bool = True,
    structured_logging: bool = False,
    log_rotation: bool = True,
    max_log_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up logging for the IaC Migrator.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        rich_console: Whether to use the Rich console handler
        structured_logging: Whether to emit structured JSON records
        log_rotation: Whether to rotate the log file
        max_log_size: Maximum log file size before rotation
        backup_count: Number of rotated log files to keep

    Returns:
        Configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper()))
    logger.handlers.clear()

    if rich_console and not structured_logging:
        console_handler = RichHandler(
            console=Console(stderr=True),
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

    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if log_rotation:
            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=max_log_size,
                backupCount=backup_count
            )
        else:
            file_handler = logging.FileHandler(log_file)

        if structured_logging:
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))

        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    if name.startswith(ROOT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


class MigrationLogger:
    """Logger bound to one migration, attaching structured metadata."""

    def __init__(self, migration_id: str, structured: bool = False):
        self.migration_id = migration_id
        self.structured = structured
        self.logger = get_logger(f"migration.{migration_id}")

    def _log(
        self,
        level: LogLevel,
        message: str,
        category: LogCategory = LogCategory.MIGRATION,
        step: Optional[str] = None,
        duration: Optional[float] = None,
        error_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        log_method = getattr(self.logger, level.value.lower())
        if self.structured:
            log_entry = LogEntry(
                level=level,
                category=category,
                message=message,
                migration_id=self.migration_id,
                step=step,
                duration=duration,
                error_code=error_code,
                metadata=metadata or {}
            )
            log_method(message, extra={'log_entry': log_entry})
        else:
            log_method(message, extra=metadata or {})

    def info(self, message: str, category: LogCategory = LogCategory.MIGRATION, **kwargs):
        self._log(LogLevel.INFO, message, category, **kwargs)

    def warning(self, message: str, category: LogCategory = LogCategory.MIGRATION, **kwargs):
        self._log(LogLevel.WARNING, message, category, **kwargs)

    def error(self, message: str, category: LogCategory = LogCategory.MIGRATION, **kwargs):
        self._log(LogLevel.ERROR, message, category, **kwargs)

    def step_start(self, step_name: str, dry_run: bool = False):
        """Log step start."""
        self.info(
            f"Starting step: {step_name}" + (" (dry run)" if dry_run else ""),
            step=step_name,
            metadata={'step_status': 'started', 'dry_run': dry_run}
        )

    def step_complete(self, step_name: str, duration: float):
        """Log step completion."""
        self.info(
            f"Completed step: {step_name} (took {duration:.2f}s)",
            step=step_name,
            duration=duration,
            metadata={'step_status': 'completed', 'duration': duration}
        )

    def step_failed(self, step_name: str, error: str, error_code: Optional[str] = None):
        """Log step failure."""
        self.error(
            f"Failed step: {step_name} - {error}",
            step=step_name,
            error_code=error_code,
            metadata={'step_status': 'failed', 'error_details': error}
        )

    def checkpoint_triggered(self, checkpoint_id: str, step_name: str, action: str, message: Optional[str]):
        """Log the outcome of a checkpoint."""
        level = LogLevel.INFO if action == "continue" else LogLevel.WARNING
        self._log(
            level,
            f"Checkpoint {checkpoint_id} on {step_name}: {action}" + (f" - {message}" if message else ""),
            LogCategory.CHECKPOINT,
            step=step_name,
            metadata={'checkpoint_id': checkpoint_id, 'checkpoint_action': action}
        )
