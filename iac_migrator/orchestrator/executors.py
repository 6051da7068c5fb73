"""
Step executor contract.

Each migration step is carried out by an executor supplied by the subsystem
that owns it (scanner, generator, comparator, importer, ...). The
orchestrator only knows the contract defined here.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from iac_migrator.core.exceptions import ErrorKind, MigrationError
from iac_migrator.models.state import MigrationState, MigrationStep, ProbeResult
from iac_migrator.orchestrator.checkpoints import resolve
from iac_migrator.orchestrator.state_machine import MigrationStateMachine

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """Per-invocation context handed to executors."""
    migration_id: str
    dry_run: bool = False
    timeout: Optional[float] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        """Whether the caller asked the migration to stop."""
        return self.cancel_event.is_set()


class StepExecutor(ABC):
    """
    Base class for step executors.

    ``execute`` should raise only for exceptional conditions such as I/O
    failures or malformed input; ordinary negative outcomes (no drift, no
    differences) belong in the returned payload.
    """

    step: MigrationStep
    mutating: bool = False

    @property
    def description(self) -> str:
        return MigrationStateMachine.get_step_description(self.step)

    @abstractmethod
    async def execute(self, state: MigrationState, context: ExecutionContext) -> Dict[str, Any]:
        """Carry out the step and return its payload."""

    async def validate(self, state: MigrationState, data: Dict[str, Any]) -> List[str]:
        """Check the payload of a completed step. Returns error messages."""
        return []

    async def rollback(self, state: MigrationState, context: ExecutionContext) -> None:
        """Undo the side effects of the step."""
        logger.info(f"No rollback needed for step {self.step.value}")


class FunctionExecutor(StepExecutor):
    """Adapts a plain sync or async callable to the executor contract."""

    def __init__(
        self,
        step: MigrationStep,
        func: Callable[[MigrationState, ExecutionContext], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]],
        mutating: bool = False,
        description: Optional[str] = None,
        rollback_func: Optional[Callable[[MigrationState, ExecutionContext], Any]] = None
    ):
        self.step = MigrationStep(step)
        self.func = func
        self.mutating = mutating
        self._description = description
        self.rollback_func = rollback_func

    @property
    def description(self) -> str:
        return self._description or super().description

    async def execute(self, state: MigrationState, context: ExecutionContext) -> Dict[str, Any]:
        result = await resolve(self.func(state, context))
        return result if result is not None else {}

    async def rollback(self, state: MigrationState, context: ExecutionContext) -> None:
        if self.rollback_func is None:
            return await super().rollback(state, context)
        await resolve(self.rollback_func(state, context))


class ExecutorRegistry:
    """Maps each step to its executor."""

    def __init__(self, executors: Optional[Iterable[StepExecutor]] = None):
        self._executors: Dict[MigrationStep, StepExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: StepExecutor, step: Optional[MigrationStep] = None):
        """Register ``executor`` for ``step`` (defaults to ``executor.step``)."""
        step = MigrationStep(step or executor.step)
        if step == MigrationStateMachine.get_terminal_step():
            raise MigrationError(
                f"The terminal step {step.value} cannot have an executor",
                kind=ErrorKind.CONFIGURATION
            )
        if step in self._executors:
            logger.info(f"Replacing executor for step {step.value}")
        self._executors[step] = executor

    def get(self, step: MigrationStep) -> StepExecutor:
        executor = self._executors.get(step)
        if executor is None:
            raise MigrationError(
                f"No executor registered for step: {MigrationStep(step).value}",
                kind=ErrorKind.EXECUTOR_NOT_FOUND,
                details={"step": MigrationStep(step).value}
            )
        return executor

    def has(self, step: MigrationStep) -> bool:
        return step in self._executors

    def steps(self) -> List[MigrationStep]:
        """Registered steps, in workflow order."""
        return [s for s in MigrationStateMachine.get_all_steps() if s in self._executors]


ProbeFn = Callable[[MigrationState], Union[ProbeResult, bool, Awaitable[Union[ProbeResult, bool]]]]


@dataclass
class VerificationProbe:
    """A named post-migration check supplied by a collaborator."""
    name: str
    check: ProbeFn
    description: str = ""

    async def run(self, state: MigrationState) -> ProbeResult:
        result = await resolve(self.check(state))
        if isinstance(result, ProbeResult):
            return result
        if isinstance(result, dict):
            return ProbeResult.model_validate(result)
        return ProbeResult(passed=bool(result))
