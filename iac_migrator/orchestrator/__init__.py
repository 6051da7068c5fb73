"""
Migration orchestrator module.

This module provides the step state machine, durable state storage,
checkpoints and the orchestrator that drives a migration through them.
"""

from .checkpoints import (
    Checkpoint,
    CheckpointAction,
    CheckpointExecution,
    CheckpointManager,
    CheckpointResult,
)
from .executors import (
    ExecutionContext,
    ExecutorRegistry,
    FunctionExecutor,
    StepExecutor,
    VerificationProbe,
)
from .orchestrator import MigrationOrchestrator
from .policies import default_checkpoints, default_probes
from .state_machine import MigrationStateMachine, TransitionCheck
from .state_manager import StateManager

__all__ = [
    "Checkpoint",
    "CheckpointAction",
    "CheckpointExecution",
    "CheckpointManager",
    "CheckpointResult",
    "ExecutionContext",
    "ExecutorRegistry",
    "FunctionExecutor",
    "StepExecutor",
    "VerificationProbe",
    "MigrationOrchestrator",
    "default_checkpoints",
    "default_probes",
    "MigrationStateMachine",
    "TransitionCheck",
    "StateManager",
]
