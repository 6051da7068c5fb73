"""
Data models for the IaC Migrator.

This module contains the Pydantic models used for configuration,
persisted state and orchestrator results.
"""

from iac_migrator.models.config import CdkLanguage, MigrationConfig
from iac_migrator.models.state import (
    BackupInfo,
    FailedStep,
    MigrationState,
    MigrationStatus,
    MigrationStep,
    ProbeResult,
    RollbackResult,
    RunMode,
    RunResult,
    StepResult,
    TrackedResource,
    VerificationResult,
)

__all__ = [
    # Configuration models
    "CdkLanguage",
    "MigrationConfig",
    # State models
    "BackupInfo",
    "FailedStep",
    "MigrationState",
    "MigrationStatus",
    "MigrationStep",
    "ProbeResult",
    "RollbackResult",
    "RunMode",
    "RunResult",
    "StepResult",
    "TrackedResource",
    "VerificationResult",
]
