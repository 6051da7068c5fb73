"""
Exceptions for the IaC Migrator.

A single error type carries a discriminating ``kind`` and a structured
``details`` payload, so callers branch on the kind instead of on a class tree.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Categories of migration errors."""
    STATE_CORRUPT = "state_corrupt"
    STATE_NOT_FOUND = "state_not_found"
    NOT_INITIALIZED = "not_initialized"
    BACKUP_NOT_FOUND = "backup_not_found"
    TRANSITION_INVALID = "transition_invalid"
    EXECUTOR_NOT_FOUND = "executor_not_found"
    STEP_FAILED = "step_failed"
    CHECKPOINT_FAILED = "checkpoint_failed"
    CONFIGURATION = "configuration"


class MigrationError(Exception):
    """Base exception class for IaC Migrator errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.STEP_FAILED,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.code = code or kind.value.upper()
        self.details = details or {}

    def __repr__(self) -> str:
        return f"MigrationError(kind={self.kind.value!r}, message={self.message!r})"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for reports and structured logs."""
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    @property
    def is_state_corrupt(self) -> bool:
        return self.kind == ErrorKind.STATE_CORRUPT
