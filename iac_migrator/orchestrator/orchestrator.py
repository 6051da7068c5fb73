"""
Main migration orchestrator.

This module provides the MigrationOrchestrator class that drives a migration
through the fixed step sequence: it invokes the registered step executors,
persists the state after every change, consults the checkpoints that gate
each step, and supports rollback, resume and verification.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError

from iac_migrator.core.exceptions import ErrorKind, MigrationError
from iac_migrator.models.config import MigrationConfig
from iac_migrator.models.state import (
    BackupInfo,
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
from iac_migrator.orchestrator.checkpoints import (
    Checkpoint,
    CheckpointAction,
    CheckpointExecution,
    CheckpointManager,
    resolve,
)
from iac_migrator.orchestrator.executors import (
    ExecutionContext,
    ExecutorRegistry,
    StepExecutor,
    VerificationProbe,
)
from iac_migrator.orchestrator.policies import Approver, default_checkpoints, default_probes
from iac_migrator.orchestrator.state_machine import MigrationStateMachine, TransitionCheck
from iac_migrator.orchestrator.state_manager import StateManager
from iac_migrator.utils.helpers import generate_migration_id, utc_now
from iac_migrator.utils.logging import LogCategory, MigrationLogger

logger = logging.getLogger(__name__)

CheckpointFactory = Callable[[Optional[Approver]], Iterable[Checkpoint]]
StepConfirmer = Callable[[MigrationStep, MigrationState], Union[bool, Awaitable[bool]]]
ProgressCallback = Callable[[str, Dict[str, Any]], None]

CANCELLED_MESSAGE = "Migration cancelled"


class MigrationOrchestrator:
    """
    Drives one migration at a time through the step sequence.

    Steps run strictly one after another. The persisted state is the only
    shared resource; two orchestrators must not use the same state directory
    concurrently.
    """

    def __init__(
        self,
        config: Optional[MigrationConfig] = None,
        working_dir: Optional[Union[str, Path]] = None,
        executors: Optional[Union[ExecutorRegistry, Iterable[StepExecutor]]] = None,
        checkpoint_factory: Optional[CheckpointFactory] = default_checkpoints,
        probes: Optional[Iterable[VerificationProbe]] = None,
        state_manager: Optional[StateManager] = None,
        confirm_step: Optional[StepConfirmer] = None,
        approver: Optional[Approver] = None
    ):
        """
        Initialize the migration orchestrator.

        Args:
            config: Configuration used by initialize() when none is passed
            working_dir: Base directory for the default state location
            executors: Step executors, as a registry or an iterable
            checkpoint_factory: Builds the checkpoints of this orchestrator; None disables them
            probes: Verification probes (defaults to the state-only probes)
            state_manager: State storage (defaults to one derived from the config)
            confirm_step: Asked before each step in interactive mode
            approver: Asked by the built-in checkpoints before pausing
        """
        self.config = config
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()

        if isinstance(executors, ExecutorRegistry):
            self.executors = executors
        else:
            self.executors = ExecutorRegistry(executors)

        self.checkpoint_manager = CheckpointManager(
            checkpoint_factory(approver) if checkpoint_factory else None
        )
        self.probes: List[VerificationProbe] = list(probes) if probes is not None else default_probes()

        self._custom_state_manager = state_manager is not None
        self.state_manager = state_manager or self._build_state_manager(config)

        self.confirm_step = confirm_step
        self.state: Optional[MigrationState] = None
        self.migration_logger: Optional[MigrationLogger] = None
        self._cancel_event = asyncio.Event()
        self._progress_callbacks: List[ProgressCallback] = []

    def _build_state_manager(self, config: Optional[MigrationConfig]) -> StateManager:
        if config is None:
            return StateManager(self.working_dir / ".migration-state")
        return StateManager(config.resolve_state_dir(self.working_dir), config.backup_dir)

    def add_progress_callback(self, callback: ProgressCallback):
        """Add a progress callback, called as ``callback(migration_id, progress_data)``."""
        self._progress_callbacks.append(callback)

    def remove_progress_callback(self, callback: ProgressCallback):
        """Remove a progress callback."""
        if callback in self._progress_callbacks:
            self._progress_callbacks.remove(callback)

    def _notify_progress(self, migration_id: str, progress_data: Dict[str, Any]):
        for callback in self._progress_callbacks:
            try:
                callback(migration_id, progress_data)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _require_state(self) -> MigrationState:
        if self.state is None:
            raise MigrationError(
                "Migration not initialized. Call initialize() or resume() first.",
                kind=ErrorKind.NOT_INITIALIZED
            )
        return self.state

    def _attach(self, state: MigrationState):
        self.state = state
        self.migration_logger = MigrationLogger(state.id)

    async def _save_state(self):
        state = self._require_state()
        await self.state_manager.save_state(state)
        keep = state.config.keep_backups
        if keep:
            await self.state_manager.cleanup_old_backups(keep)

    async def initialize(self, config: Optional[MigrationConfig] = None) -> MigrationState:
        """
        Start a new migration attempt and persist its initial state.

        Args:
            config: Migration configuration (defaults to the constructor's)

        Returns:
            The new migration state
        """
        config = config or self.config
        if config is None:
            raise MigrationError(
                "A migration configuration is required to initialize a migration",
                kind=ErrorKind.CONFIGURATION
            )

        if not self._custom_state_manager and config is not self.config:
            self.state_manager = self._build_state_manager(config)
        self.config = config

        state = MigrationState(
            id=generate_migration_id(),
            status=MigrationStatus.INITIALIZED,
            current_step=MigrationStateMachine.get_first_step(),
            config=config
        )
        self._attach(state)
        self.checkpoint_manager.clear_history(state.id)
        await self._save_state()

        self.migration_logger.info(
            f"Initialized migration {state.id} for stack {config.stack_name}"
            + (" (dry run)" if config.dry_run else ""),
            metadata={'stack_name': config.stack_name, 'stage': config.stage}
        )
        return state

    async def load_state(self) -> Optional[MigrationState]:
        """
        Load the persisted state and make it the current migration.

        Returns:
            The loaded state, or None if nothing was persisted
        """
        state = await self.state_manager.load_state()
        if state is None:
            return None

        self._attach(state)
        self.config = state.config
        history = await self.state_manager.load_checkpoint_history(state.id)
        self.checkpoint_manager.load_history(state.id, history)
        return state

    def get_state(self) -> Optional[MigrationState]:
        return self.state

    def _context(self, state: MigrationState) -> ExecutionContext:
        return ExecutionContext(
            migration_id=state.id,
            dry_run=state.config.dry_run,
            timeout=state.config.step_timeout,
            cancel_event=self._cancel_event
        )

    async def execute_step(self, step: MigrationStep) -> StepResult:
        """
        Execute a single step.

        Executor and checkpoint failures are returned as an unsuccessful
        result and recorded in the state. Failures of the state storage
        propagate.

        Args:
            step: Step to execute; must not skip ahead of the current step

        Returns:
            Outcome of the step, including any checkpoint decision
        """
        state = self._require_state()
        step = MigrationStep(step)

        # An unexecuted current_step must run before any later step
        check = MigrationStateMachine.validate_transition(state.current_step, step)
        if (
            check.valid
            and MigrationStateMachine.is_before(state.current_step, step)
            and state.current_step not in state.completed_steps
        ):
            check = TransitionCheck(
                valid=False,
                reason=(
                    f"Cannot skip from {state.current_step.value} to {step.value}: "
                    f"step {state.current_step.value} has not been executed yet"
                )
            )
        if not check.valid:
            logger.warning(f"Rejected transition: {check.reason}")
            return StepResult(success=False, step=step, error=check.reason)

        if MigrationStateMachine.is_complete(step):
            await self._finalize()
            return StepResult(success=True, step=step, message="Migration completed")

        return await self._execute(step, retried=False)

    async def _execute(self, step: MigrationStep, retried: bool) -> StepResult:
        state = self._require_state()
        context = self._context(state)
        state.status = MigrationStatus.IN_PROGRESS
        state.error = None

        self.migration_logger.step_start(step.value, dry_run=context.dry_run)
        started = utc_now()

        executor = None
        if self.executors.has(step):
            executor = self.executors.get(step)
        elif not context.dry_run:
            error = MigrationError(
                f"No executor registered for step: {step.value}",
                kind=ErrorKind.EXECUTOR_NOT_FOUND
            )
            return await self._fail(step, error.message, error.code)

        try:
            if executor is None or (context.dry_run and executor.mutating):
                description = executor.description if executor else MigrationStateMachine.get_step_description(step)
                state.dry_run_log.append(f"Would execute {step.value}: {description}")
                data: Dict[str, Any] = {"dry_run": True, "description": description}
            else:
                data = await executor.execute(state, context)
                if data is None:
                    data = {}
                if not isinstance(data, dict):
                    raise MigrationError(
                        f"Executor for step {step.value} returned {type(data).__name__}, expected a mapping",
                        kind=ErrorKind.STEP_FAILED
                    )

                errors = await executor.validate(state, data)
                if errors:
                    raise MigrationError(
                        f"Step validation failed: {'; '.join(errors)}",
                        kind=ErrorKind.STEP_FAILED,
                        details={"errors": errors}
                    )

                if "resources" in data:
                    state.resources = [
                        r if isinstance(r, TrackedResource) else TrackedResource.model_validate(r)
                        for r in data["resources"] or []
                    ]
        except MigrationError as e:
            return await self._fail(step, e.message, e.code)
        except Exception as e:
            return await self._fail(step, str(e) or type(e).__name__, type(e).__name__)

        state.step_results[step.value] = data
        if step not in state.completed_steps:
            state.completed_steps.append(step)

        next_step = MigrationStateMachine.get_next_step(step)
        if next_step and MigrationStateMachine.is_before(state.current_step, next_step):
            state.current_step = next_step

        await self._save_state()
        self.migration_logger.step_complete(step.value, (utc_now() - started).total_seconds())

        return await self._run_checkpoint(step, data, retried)

    async def _run_checkpoint(self, step: MigrationStep, data: Dict[str, Any], retried: bool) -> StepResult:
        checkpoint = await self.checkpoint_manager.should_trigger(self._require_state(), step)
        if checkpoint is None:
            return StepResult(success=True, step=step, data=data)

        result = await self.checkpoint_manager.execute_checkpoint(checkpoint, self._require_state())
        action = result.action
        message = result.message

        if result.modifications:
            self._apply_modifications(result.modifications)
        state = self._require_state()

        await self.state_manager.save_checkpoint_history(
            state.id, self.checkpoint_manager.get_execution_history(state.id)
        )

        if action == CheckpointAction.RETRY:
            if not retried:
                self.migration_logger.checkpoint_triggered(checkpoint.id, step.value, action.value, message)
                state.completed_steps = [s for s in state.completed_steps if s != step]
                state.current_step = step
                await self._save_state()
                return await self._execute(step, retried=True)
            action = CheckpointAction.PAUSE
            message = f"Retry limit reached for step {step.value}" + (f": {message}" if message else "")

        self.migration_logger.checkpoint_triggered(checkpoint.id, step.value, action.value, message)

        if action == CheckpointAction.PAUSE:
            state.status = MigrationStatus.PAUSED
            state.error = message
        elif action == CheckpointAction.ABORT:
            state.status = MigrationStatus.FAILED
            state.error = message or f"Aborted by checkpoint {checkpoint.id}"
            message = state.error
        await self._save_state()

        return StepResult(
            success=action != CheckpointAction.ABORT,
            step=step,
            data=data,
            error=message if action == CheckpointAction.ABORT else None,
            message=message,
            checkpoint_id=checkpoint.id,
            checkpoint_action=action.value
        )

    def _apply_modifications(self, modifications: Dict[str, Any]):
        """Merge a checkpoint's state patch. The migration id never changes."""
        patch = {key: value for key, value in modifications.items() if key != "id"}
        if not patch:
            return

        state = self._require_state()
        try:
            self.state = MigrationState.model_validate({**state.model_dump(), **patch})
        except ValidationError as e:
            logger.error(f"Ignoring invalid checkpoint modifications for {state.id}: {e}")

    async def _fail(self, step: MigrationStep, error: str, error_code: Optional[str] = None) -> StepResult:
        state = self._require_state()
        state.record_failure(step, error)
        self.migration_logger.step_failed(step.value, error, error_code)
        await self._save_state()
        return StepResult(success=False, step=step, error=error)

    async def _finalize(self):
        state = self._require_state()
        state.current_step = MigrationStateMachine.get_terminal_step()
        state.status = MigrationStatus.COMPLETED
        state.error = None
        state.end_time = utc_now()
        await self._save_state()
        self.migration_logger.info(
            f"Migration {state.id} completed ({len(state.completed_steps)} steps)",
            metadata={'duration': state.duration}
        )

    async def run_migration(self, mode: Union[RunMode, str] = RunMode.AUTOMATIC) -> RunResult:
        """
        Run the remaining steps up to the terminal step.

        Completed steps are skipped, so a partially completed migration picks
        up where it stopped. The run stops at the first failed step, at a
        pause or abort decided by a checkpoint, or when cancelled.

        Args:
            mode: automatic, or interactive to confirm each step first

        Returns:
            Outcome of the run
        """
        state = self._require_state()
        mode = RunMode(mode)
        self._cancel_event.clear()
        executed: List[MigrationStep] = []

        if state.status == MigrationStatus.COMPLETED:
            return self._run_result(True, executed, message="Migration already completed")

        if mode == RunMode.INTERACTIVE and self.confirm_step is None:
            logger.warning("Interactive mode requested without a step confirmation callback")

        self.migration_logger.info(
            f"Running migration {state.id} from step {state.current_step.value} ({mode.value})"
        )

        while True:
            state = self._require_state()
            step = state.current_step

            if MigrationStateMachine.is_complete(step):
                await self._finalize()
                return self._run_result(True, executed, message="Migration completed")

            if self._cancel_event.is_set():
                return await self._halt(executed, CANCELLED_MESSAGE)

            if step in state.completed_steps:
                state.current_step = MigrationStateMachine.get_next_step(step)
                continue

            if mode == RunMode.INTERACTIVE and self.confirm_step is not None:
                if not await resolve(self.confirm_step(step, state)):
                    return await self._halt(executed, f"Paused before step {step.value}")

            self._notify_progress(state.id, {
                "step": step.value,
                "status": "started",
                "percentage": MigrationStateMachine.calculate_progress(step)
            })

            result = await self.execute_step(step)
            executed.append(step)

            state = self._require_state()
            self._notify_progress(state.id, {
                "step": step.value,
                "status": "completed" if result.success else "failed",
                "checkpoint_action": result.checkpoint_action,
                "percentage": MigrationStateMachine.calculate_progress(state.current_step),
                "message": result.message or result.error
            })

            if result.checkpoint_action == CheckpointAction.ABORT.value:
                return self._run_result(False, executed, message=result.error)
            if not result.success:
                return self._run_result(False, executed, failed_step=step, message=result.error)
            if result.checkpoint_action == CheckpointAction.PAUSE.value:
                return self._run_result(False, executed, message=result.message)

    async def _halt(self, executed: List[MigrationStep], message: str) -> RunResult:
        state = self._require_state()
        state.status = MigrationStatus.PAUSED
        state.error = message
        await self._save_state()
        self.migration_logger.warning(message)
        return self._run_result(False, executed, message=message)

    def _run_result(
        self,
        success: bool,
        executed: List[MigrationStep],
        failed_step: Optional[MigrationStep] = None,
        message: Optional[str] = None
    ) -> RunResult:
        state = self._require_state()
        report = "\n".join(state.dry_run_log) if state.config.dry_run else None
        return RunResult(
            success=success,
            status=state.status,
            failed_step=failed_step,
            message=message,
            executed_steps=executed,
            dry_run_report=report
        )

    def cancel(self):
        """Ask the running migration to stop before its next step."""
        self._cancel_event.set()
        logger.info("Cancellation requested")

    async def resume(self, mode: Union[RunMode, str] = RunMode.AUTOMATIC) -> RunResult:
        """
        Reload the persisted state and continue the migration.

        Raises:
            MigrationError: with kind STATE_NOT_FOUND if nothing was persisted
        """
        state = await self.load_state()
        if state is None:
            raise MigrationError(
                "No saved migration state found",
                kind=ErrorKind.STATE_NOT_FOUND,
                details={"state_dir": str(self.state_manager.state_dir)}
            )

        self.migration_logger.info(
            f"Resuming migration {state.id} at step {state.current_step.value} (status {state.status.value})"
        )
        return await self.run_migration(mode)

    async def rollback(self, target_step: MigrationStep) -> RollbackResult:
        """
        Roll the migration back to ``target_step``.

        Executor rollback hooks run for the completed steps after the target,
        newest first. If a hook fails nothing is persisted. The newest backup
        whose progress does not go past the target becomes the new state,
        with the target as the current step.

        Args:
            target_step: Step at or before the current step

        Returns:
            Outcome of the rollback
        """
        state = self._require_state()
        target = MigrationStep(target_step)

        if MigrationStateMachine.is_before(state.current_step, target):
            error = (
                f"Cannot roll back to {target.value}: it is after the current step "
                f"{state.current_step.value}"
            )
            logger.warning(error)
            return RollbackResult(success=False, step=target, error=error)

        self.migration_logger.info(
            f"Rolling back migration {state.id} to step {target.value}", LogCategory.ROLLBACK
        )

        context = self._context(state)
        undone = [s for s in reversed(state.completed_steps) if MigrationStateMachine.is_before(target, s)]
        for step in undone:
            if not self.executors.has(step):
                continue
            executor = self.executors.get(step)
            if context.dry_run and executor.mutating:
                state.dry_run_log.append(f"Would roll back {step.value}: {executor.description}")
                continue
            try:
                await executor.rollback(state, context)
            except Exception as e:
                error = f"Rollback of step {step.value} failed: {e}"
                self.migration_logger.error(error, LogCategory.ROLLBACK, step=step.value)
                return RollbackResult(success=False, step=target, error=error)

        backup = await self._find_backup(state, target)
        if backup is not None:
            restored = await self.state_manager.restore_from_backup(backup.identifier)
        else:
            restored = state.model_copy(deep=True)

        restored.current_step = target
        restored.completed_steps = [
            s for s in restored.completed_steps if not MigrationStateMachine.is_before(target, s)
        ]
        kept = {s.value for s in restored.completed_steps}
        restored.step_results = {
            key: value for key, value in restored.step_results.items() if key in kept
        }
        restored.failed_steps = list(state.failed_steps)
        restored.dry_run_log = list(state.dry_run_log)
        restored.status = MigrationStatus.ROLLED_BACK
        restored.error = None
        restored.end_time = None

        self.state = restored
        await self._save_state()

        self.migration_logger.info(
            f"Rolled back to step {target.value}"
            + (f" from backup {backup.identifier}" if backup else ""),
            LogCategory.ROLLBACK
        )
        return RollbackResult(
            success=True,
            step=target,
            restored_backup=backup.identifier if backup else None
        )

    async def _find_backup(self, state: MigrationState, target: MigrationStep) -> Optional[BackupInfo]:
        """Newest backup of this migration whose completed steps stop at ``target``."""
        for backup in await self.state_manager.list_backups():
            try:
                candidate = await self.state_manager.restore_from_backup(backup.identifier)
            except MigrationError as e:
                logger.warning(f"Skipping unreadable backup {backup.identifier}: {e.message}")
                continue

            if candidate.id != state.id:
                continue
            if all(not MigrationStateMachine.is_before(target, s) for s in candidate.completed_steps):
                return backup

        logger.info(f"No backup found at or before step {target.value}, using the current state")
        return None

    async def verify(self) -> VerificationResult:
        """Run every verification probe against the current state."""
        state = self._require_state()
        checks: Dict[str, bool] = {}
        details: Dict[str, str] = {}
        errors: List[str] = []

        for probe in self.probes:
            try:
                outcome = await probe.run(state)
            except Exception as e:
                outcome = ProbeResult(passed=False, detail=str(e) or type(e).__name__)

            checks[probe.name] = outcome.passed
            details[probe.name] = outcome.detail
            if not outcome.passed:
                errors.append(f"{probe.name}: {outcome.detail}")

        success = not errors
        self.migration_logger.info(
            f"Verification {'passed' if success else 'failed'}: "
            f"{sum(checks.values())}/{len(checks)} checks passed",
            LogCategory.VERIFICATION
        )
        return VerificationResult(success=success, checks=checks, details=details, errors=errors)

    async def list_state_backups(self) -> List[BackupInfo]:
        return await self.state_manager.list_backups()

    def get_progress(self) -> Dict[str, Any]:
        """Summarize how far the current migration has progressed."""
        state = self._require_state()
        executable = MigrationStateMachine.get_executable_steps()
        return {
            "current_step": state.current_step.value,
            "percentage": MigrationStateMachine.calculate_progress(state.current_step),
            "completed_steps": len(state.completed_steps),
            "total_steps": len(executable),
            "remaining_steps": [s.value for s in executable if s not in state.completed_steps],
        }

    def get_checkpoint_history(self) -> List[CheckpointExecution]:
        state = self._require_state()
        return self.checkpoint_manager.get_execution_history(state.id)
