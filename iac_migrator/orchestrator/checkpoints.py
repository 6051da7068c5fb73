"""
Checkpoint manager for the migration orchestrator.

A checkpoint is a named, conditional gate attached to a step. After the step
completes, the manager finds the first registered checkpoint whose condition
holds and runs its handler, which decides whether the migration continues,
pauses for review, aborts, or retries the step.
"""

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from iac_migrator.models.state import MigrationState, MigrationStep
from iac_migrator.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class CheckpointAction(str, Enum):
    """What the orchestrator should do after a checkpoint."""
    CONTINUE = "continue"
    PAUSE = "pause"
    ABORT = "abort"
    RETRY = "retry"


class CheckpointResult(BaseModel):
    """Result of a checkpoint handler."""
    action: CheckpointAction
    message: Optional[str] = None
    modifications: Optional[Dict[str, Any]] = None


class CheckpointExecution(BaseModel):
    """Audit record of one checkpoint execution."""
    checkpoint_id: str
    migration_id: str
    executed_at: datetime = Field(default_factory=utc_now)
    result: CheckpointResult
    state_snapshot: Dict[str, Any] = Field(default_factory=dict)


ConditionFn = Callable[[MigrationState], Union[bool, Awaitable[bool]]]
HandlerFn = Callable[
    [MigrationState],
    Union[CheckpointResult, Dict[str, Any], Awaitable[Union[CheckpointResult, Dict[str, Any]]]]
]


@dataclass
class Checkpoint:
    """A conditional gate evaluated after ``step`` completes."""
    id: str
    step: MigrationStep
    name: str
    description: str
    condition: ConditionFn
    handler: HandlerFn


async def resolve(value: Any) -> Any:
    """Await ``value`` if it is awaitable, so sync and async callbacks share one path."""
    if inspect.isawaitable(value):
        return await value
    return value


class CheckpointManager:
    """Registry and executor of checkpoints."""

    def __init__(self, checkpoints: Optional[Iterable[Checkpoint]] = None):
        self._registry: Dict[MigrationStep, List[Checkpoint]] = defaultdict(list)
        self._history: Dict[str, List[CheckpointExecution]] = defaultdict(list)

        if checkpoints:
            self.register_checkpoints(checkpoints)

    def register_checkpoint(self, checkpoint: Checkpoint):
        """
        Register a checkpoint.

        Any number of checkpoints may share a step; they are evaluated in
        registration order. Registering an id that already exists replaces
        the earlier checkpoint in place.
        """
        for step, checkpoints in self._registry.items():
            for index, existing in enumerate(checkpoints):
                if existing.id != checkpoint.id:
                    continue
                if step == checkpoint.step:
                    checkpoints[index] = checkpoint
                    logger.info(f"Replaced checkpoint {checkpoint.id} on step {step.value}")
                    return
                del checkpoints[index]
                break

        self._registry[checkpoint.step].append(checkpoint)
        logger.info(f"Registered checkpoint {checkpoint.id} on step {checkpoint.step.value}")

    def register_checkpoints(self, checkpoints: Iterable[Checkpoint]):
        for checkpoint in checkpoints:
            self.register_checkpoint(checkpoint)

    def unregister_checkpoint(self, checkpoint_id: str) -> bool:
        """Remove a checkpoint by id. Returns True if one was removed."""
        for checkpoints in self._registry.values():
            for index, existing in enumerate(checkpoints):
                if existing.id == checkpoint_id:
                    del checkpoints[index]
                    return True
        return False

    def get_checkpoints(self) -> Dict[MigrationStep, List[Checkpoint]]:
        """Get a copy of the registry, keyed by step."""
        return {step: list(cps) for step, cps in self._registry.items() if cps}

    def get_checkpoints_for_step(self, step: MigrationStep) -> List[Checkpoint]:
        return list(self._registry.get(step, []))

    async def should_trigger(
        self,
        state: MigrationState,
        step: MigrationStep
    ) -> Optional[Checkpoint]:
        """
        Find the first checkpoint for ``step`` whose condition holds.

        A condition that raises is logged and treated as not met, so a
        broken condition never blocks the migration.
        """
        for checkpoint in self.get_checkpoints_for_step(step):
            try:
                triggered = await resolve(checkpoint.condition(state))
            except Exception as e:
                logger.error(f"Error evaluating condition of checkpoint {checkpoint.id}: {e}")
                continue

            if triggered:
                logger.info(f"Checkpoint condition met: {checkpoint.id} ({step.value})")
                return checkpoint

        return None

    async def execute_checkpoint(
        self,
        checkpoint: Checkpoint,
        state: MigrationState
    ) -> CheckpointResult:
        """
        Run a checkpoint handler.

        Errors raised by the handler, or a return value that is not a valid
        result, are converted into an abort result carrying the error text.
        The execution is always recorded in the migration's history.
        """
        logger.info(f"Executing checkpoint: {checkpoint.name}")

        try:
            result = await resolve(checkpoint.handler(state))
            if not isinstance(result, CheckpointResult):
                result = CheckpointResult.model_validate(result)
        except Exception as e:
            logger.error(f"Checkpoint {checkpoint.id} failed: {e}")
            result = CheckpointResult(
                action=CheckpointAction.ABORT,
                message=f"Checkpoint '{checkpoint.name}' failed: {e}"
            )

        self._history[state.id].append(CheckpointExecution(
            checkpoint_id=checkpoint.id,
            migration_id=state.id,
            result=result,
            state_snapshot={
                "step": state.current_step.value,
                "status": state.status.value,
            }
        ))

        return result

    def get_execution_history(self, migration_id: str) -> List[CheckpointExecution]:
        """Get the checkpoint executions recorded for a migration."""
        return list(self._history.get(migration_id, []))

    def load_history(self, migration_id: str, executions: Iterable[CheckpointExecution]):
        """Seed the history of a migration, e.g. after a restart."""
        self._history[migration_id] = list(executions)

    def clear_history(self, migration_id: Optional[str] = None):
        """Clear the execution history of one migration, or of all of them."""
        if migration_id is None:
            self._history.clear()
        else:
            self._history.pop(migration_id, None)
        logger.info("Checkpoint execution history cleared")
