"""
State models for the IaC Migrator.

This module defines Pydantic models for the persisted migration state,
the records it tracks, and the result values returned by the orchestrator.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from iac_migrator.models.config import MigrationConfig
from iac_migrator.utils.helpers import utc_now


class MigrationStep(str, Enum):
    """Migration steps, declared in execution order."""
    SCAN = "scan"
    DISCOVERY = "discovery"
    PROTECT = "protect"
    GENERATE = "generate"
    COMPARE = "compare"
    TEMPLATE_MODIFICATION = "template_modification"
    IMPORT_PREPARATION = "import_preparation"
    IMPORT = "import"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


class MigrationStatus(str, Enum):
    """Migration status."""
    INITIALIZED = "initialized"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RunMode(str, Enum):
    """How run_migration schedules steps."""
    AUTOMATIC = "automatic"
    INTERACTIVE = "interactive"


class FailedStep(BaseModel):
    """A step execution that raised."""
    step: MigrationStep
    error: str
    timestamp: datetime = Field(default_factory=utc_now)


class TrackedResource(BaseModel):
    """A resource the migration will bring under CDK management."""
    logical_id: str
    resource_type: str
    physical_id: Optional[str] = None
    is_stateful: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_resolved(self) -> bool:
        return bool(self.physical_id)


class MigrationState(BaseModel):
    """Complete snapshot of one migration attempt."""
    id: str
    status: MigrationStatus = MigrationStatus.INITIALIZED
    current_step: MigrationStep = MigrationStep.SCAN
    completed_steps: List[MigrationStep] = Field(default_factory=list)
    failed_steps: List[FailedStep] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    config: MigrationConfig
    step_results: Dict[str, Any] = Field(default_factory=dict)
    resources: List[TrackedResource] = Field(default_factory=list)
    error: Optional[str] = None
    dry_run_log: List[str] = Field(default_factory=list)

    def touch(self):
        """Refresh the update timestamp."""
        self.updated_at = utc_now()

    def is_step_completed(self, step: MigrationStep) -> bool:
        return step in self.completed_steps

    def get_step_result(self, step: MigrationStep) -> Any:
        """Payload stored by the executor of a step, if any."""
        return self.step_results.get(step.value)

    def unresolved_resources(self) -> List[TrackedResource]:
        """Tracked resources still lacking a physical identifier."""
        return [r for r in self.resources if not r.is_resolved]

    def record_failure(self, step: MigrationStep, error: str):
        """Record a failed step execution."""
        self.failed_steps.append(FailedStep(step=step, error=error))
        self.status = MigrationStatus.FAILED
        self.error = error
        self.touch()

    @property
    def duration(self) -> Optional[float]:
        """Seconds between start and end, once the run has ended."""
        if self.end_time is None:
            return None
        return (self.end_time - self.started_at).total_seconds()


class BackupInfo(BaseModel):
    """A timestamped copy of an earlier state snapshot."""
    identifier: str
    created_at: datetime
    path: str


class StepResult(BaseModel):
    """Outcome of executing a single step."""
    success: bool
    step: MigrationStep
    data: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None
    checkpoint_id: Optional[str] = None
    checkpoint_action: Optional[str] = None

    @property
    def halted(self) -> bool:
        """Whether a checkpoint asked the run loop to stop."""
        return self.checkpoint_action in ("pause", "abort")


class RunResult(BaseModel):
    """Outcome of run_migration or resume."""
    success: bool
    status: MigrationStatus
    failed_step: Optional[MigrationStep] = None
    message: Optional[str] = None
    executed_steps: List[MigrationStep] = Field(default_factory=list)
    dry_run_report: Optional[str] = None


class RollbackResult(BaseModel):
    """Outcome of a rollback."""
    success: bool
    step: MigrationStep
    restored_backup: Optional[str] = None
    error: Optional[str] = None


class ProbeResult(BaseModel):
    """Outcome of one verification probe."""
    passed: bool
    detail: str = ""


class VerificationResult(BaseModel):
    """Aggregated verification outcome."""
    success: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    details: Dict[str, str] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
