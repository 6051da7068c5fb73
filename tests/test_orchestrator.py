"""
Tests for the migration orchestrator.

These tests drive the orchestrator with in-memory executors against a
temporary state directory.
"""

from typing import Any, Dict, List

import pytest

from iac_migrator.core.exceptions import ErrorKind, MigrationError
from iac_migrator.models.state import MigrationStatus, MigrationStep, RunMode
from iac_migrator.orchestrator.checkpoints import Checkpoint, CheckpointAction, CheckpointResult
from iac_migrator.orchestrator.executors import StepExecutor, VerificationProbe
from iac_migrator.orchestrator.orchestrator import MigrationOrchestrator
from iac_migrator.orchestrator.state_machine import MigrationStateMachine
from iac_migrator.orchestrator.state_manager import StateManager


ALL_STEPS = MigrationStateMachine.get_executable_steps()


def single_checkpoint(step, handler, checkpoint_id="test-gate"):
    """Checkpoint factory that registers one always-firing checkpoint."""
    def factory(approver=None):
        return [Checkpoint(
            id=checkpoint_id,
            step=step,
            name="Test Gate",
            description="Gate used by tests",
            condition=lambda state: True,
            handler=handler,
        )]
    return factory


def failing(message):
    def execute(state, context):
        raise RuntimeError(message)
    return execute


class ValidatingExecutor(StepExecutor):
    """Executor whose payload never passes validation."""

    step = MigrationStep.SCAN

    async def execute(self, state, context) -> Dict[str, Any]:
        return {"template": None}

    async def validate(self, state, data) -> List[str]:
        return ["missing template"]


class UnwritableStateManager(StateManager):
    """State manager whose writes start failing once ``read_only`` is set."""

    read_only = False

    async def save_state(self, state):
        if self.read_only:
            raise OSError(30, "Read-only file system", str(self.state_file))
        return await super().save_state(state)


class TestInitialize:
    """Test migration initialization."""

    @pytest.mark.asyncio
    async def test_initialize_creates_fresh_state(self, orchestrator, state_manager):
        state = await orchestrator.initialize()

        assert state.status == MigrationStatus.INITIALIZED
        assert state.current_step == MigrationStep.SCAN
        assert state.completed_steps == []
        assert state.failed_steps == []
        assert state.id.startswith("migration-")
        assert state_manager.has_state()

    @pytest.mark.asyncio
    async def test_each_attempt_gets_new_id(self, orchestrator):
        first = await orchestrator.initialize()
        second = await orchestrator.initialize()
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_initialize_requires_config(self, state_manager):
        orchestrator = MigrationOrchestrator(state_manager=state_manager)
        with pytest.raises(MigrationError) as exc_info:
            await orchestrator.initialize()
        assert exc_info.value.kind == ErrorKind.CONFIGURATION

    @pytest.mark.asyncio
    async def test_default_state_location(self, sample_config, tmp_path):
        orchestrator = MigrationOrchestrator(config=sample_config, working_dir=tmp_path)
        await orchestrator.initialize()
        assert (tmp_path / ".migration-state" / "state.json").exists()

    @pytest.mark.asyncio
    async def test_operations_require_initialization(self, orchestrator):
        with pytest.raises(MigrationError) as exc_info:
            await orchestrator.execute_step(MigrationStep.SCAN)
        assert exc_info.value.kind == ErrorKind.NOT_INITIALIZED


class TestExecuteStep:
    """Test single step execution."""

    @pytest.mark.asyncio
    async def test_successful_step_advances_and_persists(self, orchestrator, state_manager, executors):
        await orchestrator.initialize()

        result = await orchestrator.execute_step(MigrationStep.SCAN)

        assert result.success
        assert result.data == {"step": "scan"}
        state = orchestrator.get_state()
        assert state.completed_steps == [MigrationStep.SCAN]
        assert state.current_step == MigrationStep.DISCOVERY
        assert state.status == MigrationStatus.IN_PROGRESS
        assert executors.calls == [MigrationStep.SCAN]

        persisted = await state_manager.load_state()
        assert persisted.completed_steps == [MigrationStep.SCAN]
        assert persisted.step_results["scan"] == {"step": "scan"}

    @pytest.mark.asyncio
    async def test_failing_executor_is_recorded(self, orchestrator, state_manager, executors):
        executors.replace(MigrationStep.SCAN, failing("template not found"))
        await orchestrator.initialize()

        result = await orchestrator.execute_step(MigrationStep.SCAN)

        assert not result.success
        assert result.error == "template not found"
        state = orchestrator.get_state()
        assert state.status == MigrationStatus.FAILED
        assert len(state.failed_steps) == 1
        assert state.failed_steps[0].step == MigrationStep.SCAN
        assert state.failed_steps[0].error == "template not found"
        assert state.completed_steps == []
        assert state.current_step == MigrationStep.SCAN

        persisted = await state_manager.load_state()
        assert persisted.status == MigrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_forward_skip_is_rejected_without_mutation(self, orchestrator, state_manager, executors):
        await orchestrator.initialize()
        before = state_manager.state_file.read_text(encoding="utf-8")

        result = await orchestrator.execute_step(MigrationStep.PROTECT)

        assert not result.success
        assert "Cannot skip" in result.error
        assert executors.calls == []
        assert orchestrator.get_state().status == MigrationStatus.INITIALIZED
        assert state_manager.state_file.read_text(encoding="utf-8") == before

    @pytest.mark.asyncio
    async def test_next_step_cannot_skip_unexecuted_current_step(self, orchestrator, state_manager, executors):
        await orchestrator.initialize()
        before = state_manager.state_file.read_text(encoding="utf-8")

        result = await orchestrator.execute_step(MigrationStep.DISCOVERY)

        assert not result.success
        assert "Cannot skip" in result.error
        assert executors.calls == []
        state = orchestrator.get_state()
        assert state.completed_steps == []
        assert state.current_step == MigrationStep.SCAN
        assert state_manager.state_file.read_text(encoding="utf-8") == before

        run = await orchestrator.run_migration()
        assert run.success
        assert orchestrator.get_state().completed_steps == ALL_STEPS

    @pytest.mark.asyncio
    async def test_terminal_step_requires_cleanup(self, orchestrator, executors):
        await orchestrator.initialize()
        for step in ALL_STEPS[:-1]:
            await orchestrator.execute_step(step)

        result = await orchestrator.execute_step(MigrationStep.COMPLETE)

        assert not result.success
        assert orchestrator.get_state().status != MigrationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_state_write_failure_propagates(self, sample_config, tmp_path, executors):
        state_manager = UnwritableStateManager(tmp_path / "state")
        orchestrator = MigrationOrchestrator(
            config=sample_config, executors=executors.registry, state_manager=state_manager
        )
        await orchestrator.initialize()
        state_manager.read_only = True

        with pytest.raises(OSError):
            await orchestrator.execute_step(MigrationStep.SCAN)
        with pytest.raises(OSError):
            await orchestrator.run_migration()

    @pytest.mark.asyncio
    async def test_missing_executor(self, sample_config, state_manager):
        orchestrator = MigrationOrchestrator(config=sample_config, state_manager=state_manager)
        await orchestrator.initialize()

        result = await orchestrator.execute_step(MigrationStep.SCAN)

        assert not result.success
        assert result.error == "No executor registered for step: scan"

    @pytest.mark.asyncio
    async def test_validation_errors_fail_the_step(self, sample_config, state_manager):
        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=[ValidatingExecutor()],
            state_manager=state_manager
        )
        await orchestrator.initialize()

        result = await orchestrator.execute_step(MigrationStep.SCAN)

        assert not result.success
        assert "missing template" in result.error
        assert orchestrator.get_state().completed_steps == []

    @pytest.mark.asyncio
    async def test_resources_payload_replaces_tracked_resources(self, sample_config, state_manager, executors_factory):
        executors = executors_factory({
            MigrationStep.SCAN: {
                "resources": [
                    {"logical_id": "Bucket", "resource_type": "AWS::S3::Bucket", "physical_id": "bucket-1"}
                ]
            }
        })
        orchestrator = MigrationOrchestrator(
            config=sample_config, executors=executors.registry, state_manager=state_manager
        )
        await orchestrator.initialize()

        await orchestrator.execute_step(MigrationStep.SCAN)

        resources = orchestrator.get_state().resources
        assert [r.logical_id for r in resources] == ["Bucket"]
        assert resources[0].is_resolved

    @pytest.mark.asyncio
    async def test_reexecuting_a_step_does_not_duplicate_it(self, orchestrator, executors):
        await orchestrator.initialize()
        await orchestrator.execute_step(MigrationStep.SCAN)
        await orchestrator.execute_step(MigrationStep.DISCOVERY)

        result = await orchestrator.execute_step(MigrationStep.SCAN)

        state = orchestrator.get_state()
        assert result.success
        assert state.completed_steps == [MigrationStep.SCAN, MigrationStep.DISCOVERY]
        assert state.current_step == MigrationStep.PROTECT


class TestRunMigration:
    """Test full runs."""

    @pytest.mark.asyncio
    async def test_automatic_run_completes_all_steps(self, orchestrator, executors):
        await orchestrator.initialize()

        result = await orchestrator.run_migration(RunMode.AUTOMATIC)

        assert result.success
        assert result.status == MigrationStatus.COMPLETED
        assert result.executed_steps == ALL_STEPS
        state = orchestrator.get_state()
        assert state.status == MigrationStatus.COMPLETED
        assert len(state.completed_steps) == 9
        assert state.current_step == MigrationStep.COMPLETE
        assert state.end_time is not None
        assert state.duration >= 0
        assert executors.calls == ALL_STEPS

    @pytest.mark.asyncio
    async def test_run_stops_at_failure(self, orchestrator, executors):
        executors.replace(MigrationStep.PROTECT, failing("access denied"))
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert not result.success
        assert result.failed_step == MigrationStep.PROTECT
        assert result.message == "access denied"
        assert result.status == MigrationStatus.FAILED
        assert executors.calls == [MigrationStep.SCAN, MigrationStep.DISCOVERY]

    @pytest.mark.asyncio
    async def test_pause_on_unresolved_resources(self, sample_config, state_manager, executors_factory):
        executors = executors_factory({
            MigrationStep.DISCOVERY: {
                "resources": [{"logical_id": "OrdersTable", "resource_type": "AWS::DynamoDB::Table"}]
            }
        })
        orchestrator = MigrationOrchestrator(
            config=sample_config, executors=executors.registry, state_manager=state_manager
        )
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert not result.success
        assert result.status == MigrationStatus.PAUSED
        assert "OrdersTable" in result.message
        assert result.executed_steps == [MigrationStep.SCAN, MigrationStep.DISCOVERY]
        assert orchestrator.get_state().current_step == MigrationStep.PROTECT

    @pytest.mark.asyncio
    async def test_approver_lets_run_continue(self, sample_config, state_manager, executors_factory):
        executors = executors_factory({
            MigrationStep.DISCOVERY: {
                "resources": [{"logical_id": "OrdersTable", "resource_type": "AWS::DynamoDB::Table"}]
            }
        })
        approvals = []

        def approver(checkpoint, state, message):
            approvals.append(checkpoint.id)
            return True

        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            approver=approver
        )
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert result.success
        assert approvals == ["physical-id-resolution"]

    @pytest.mark.asyncio
    async def test_abort_stops_run(self, sample_config, state_manager, executors):
        handler = lambda state: CheckpointResult(action=CheckpointAction.ABORT, message="Generated code rejected")
        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            checkpoint_factory=single_checkpoint(MigrationStep.GENERATE, handler)
        )
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert not result.success
        assert result.failed_step is None
        assert result.message == "Generated code rejected"
        state = orchestrator.get_state()
        assert state.status == MigrationStatus.FAILED
        assert state.error == "Generated code rejected"
        assert state.failed_steps == []
        assert MigrationStep.COMPARE not in executors.calls

    @pytest.mark.asyncio
    async def test_raising_checkpoint_handler_aborts(self, sample_config, state_manager, executors):
        def handler(state):
            raise RuntimeError("approval service unavailable")

        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            checkpoint_factory=single_checkpoint(MigrationStep.SCAN, handler)
        )
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert not result.success
        assert "approval service unavailable" in result.message
        assert orchestrator.get_state().status == MigrationStatus.FAILED

    @pytest.mark.asyncio
    async def test_retry_reinvokes_step_once(self, sample_config, state_manager, executors):
        decisions = iter([CheckpointAction.RETRY, CheckpointAction.CONTINUE])
        handler = lambda state: CheckpointResult(action=next(decisions))
        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            checkpoint_factory=single_checkpoint(MigrationStep.SCAN, handler)
        )
        await orchestrator.initialize()

        result = await orchestrator.execute_step(MigrationStep.SCAN)

        assert result.success
        assert result.checkpoint_action == "continue"
        assert executors.calls == [MigrationStep.SCAN, MigrationStep.SCAN]
        assert orchestrator.get_state().completed_steps == [MigrationStep.SCAN]

    @pytest.mark.asyncio
    async def test_second_retry_pauses(self, sample_config, state_manager, executors):
        handler = lambda state: CheckpointResult(action=CheckpointAction.RETRY, message="still flaky")
        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            checkpoint_factory=single_checkpoint(MigrationStep.SCAN, handler)
        )
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert result.status == MigrationStatus.PAUSED
        assert "Retry limit reached" in result.message
        assert executors.calls == [MigrationStep.SCAN, MigrationStep.SCAN]

    @pytest.mark.asyncio
    async def test_checkpoint_modifications_are_merged(self, sample_config, state_manager, executors):
        handler = lambda state: CheckpointResult(
            action=CheckpointAction.CONTINUE,
            modifications={
                "id": "hijacked",
                "resources": [{"logical_id": "Queue", "resource_type": "AWS::SQS::Queue", "physical_id": "q"}],
            }
        )
        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            checkpoint_factory=single_checkpoint(MigrationStep.SCAN, handler)
        )
        state = await orchestrator.initialize()

        await orchestrator.execute_step(MigrationStep.SCAN)

        updated = orchestrator.get_state()
        assert updated.id == state.id
        assert [r.logical_id for r in updated.resources] == ["Queue"]

    @pytest.mark.asyncio
    async def test_checkpoint_history_is_persisted(self, orchestrator, state_manager, executors):
        state = await orchestrator.initialize()
        await orchestrator.run_migration()

        history = await state_manager.load_checkpoint_history(state.id)
        assert [e.checkpoint_id for e in history] == ["pre-import-verification"]

        reloaded = MigrationOrchestrator(executors=executors.registry, state_manager=state_manager)
        await reloaded.load_state()
        assert len(reloaded.get_checkpoint_history()) == 1

    @pytest.mark.asyncio
    async def test_interactive_mode_declined_step_pauses(self, sample_config, state_manager, executors):
        asked = []

        async def confirm(step, state):
            asked.append(step)
            return step != MigrationStep.PROTECT

        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            confirm_step=confirm
        )
        await orchestrator.initialize()

        result = await orchestrator.run_migration(RunMode.INTERACTIVE)

        assert result.status == MigrationStatus.PAUSED
        assert asked == [MigrationStep.SCAN, MigrationStep.DISCOVERY, MigrationStep.PROTECT]
        assert executors.calls == [MigrationStep.SCAN, MigrationStep.DISCOVERY]

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_step(self, orchestrator, executors):
        def cancelling(state, context):
            executors.calls.append(MigrationStep.DISCOVERY)
            orchestrator.cancel()
            assert context.cancelled
            return {}

        executors.replace(MigrationStep.DISCOVERY, cancelling)
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert not result.success
        assert result.status == MigrationStatus.PAUSED
        assert result.message == "Migration cancelled"
        assert executors.calls == [MigrationStep.SCAN, MigrationStep.DISCOVERY]

    @pytest.mark.asyncio
    async def test_progress_callbacks_follow_each_step(self, orchestrator):
        events = []
        orchestrator.add_progress_callback(lambda migration_id, data: events.append((migration_id, data)))
        state = await orchestrator.initialize()

        await orchestrator.run_migration()

        completed = [data for _, data in events if data["status"] == "completed"]
        assert [data["step"] for data in completed] == [s.value for s in ALL_STEPS]
        assert completed[-1]["percentage"] == 100
        assert all(migration_id == state.id for migration_id, _ in events)
        assert [data["step"] for _, data in events if data["status"] == "started"][0] == "scan"

    @pytest.mark.asyncio
    async def test_failed_step_is_reported_to_callbacks(self, orchestrator, executors):
        executors.replace(MigrationStep.DISCOVERY, failing("stack not found"))
        events = []
        orchestrator.add_progress_callback(lambda migration_id, data: events.append(data))
        await orchestrator.initialize()

        await orchestrator.run_migration()

        assert events[-1]["step"] == "discovery"
        assert events[-1]["status"] == "failed"
        assert events[-1]["message"] == "stack not found"

    @pytest.mark.asyncio
    async def test_removed_and_raising_callbacks(self, orchestrator):
        events = []

        def record(migration_id, data):
            events.append(data)

        def broken(migration_id, data):
            raise ValueError("display closed")

        orchestrator.add_progress_callback(record)
        orchestrator.add_progress_callback(broken)
        orchestrator.remove_progress_callback(record)
        orchestrator.remove_progress_callback(record)
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert result.success
        assert events == []

    @pytest.mark.asyncio
    async def test_old_backups_are_pruned(self, sample_config, state_manager, executors):
        config = sample_config.model_copy(update={"keep_backups": 2})
        orchestrator = MigrationOrchestrator(
            config=config, executors=executors.registry, state_manager=state_manager
        )
        await orchestrator.initialize()
        await orchestrator.run_migration()

        assert len(await state_manager.list_backups()) == 2


class TestDryRun:
    """Test dry run behaviour."""

    @pytest.mark.asyncio
    async def test_mutating_executors_are_not_invoked(self, dry_run_config, state_manager, executors):
        mutated = []

        def protect(state, context):
            mutated.append(MigrationStep.PROTECT)
            return {}

        executors.replace(MigrationStep.PROTECT, protect, mutating=True)
        orchestrator = MigrationOrchestrator(
            config=dry_run_config, executors=executors.registry, state_manager=state_manager
        )
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert result.success
        assert mutated == []
        assert MigrationStep.SCAN in executors.calls
        assert "Would execute protect" in result.dry_run_report
        assert orchestrator.get_state().step_results["protect"]["dry_run"] is True

    @pytest.mark.asyncio
    async def test_dry_run_flag_reaches_executors(self, dry_run_config, state_manager, executors):
        seen = []
        executors.replace(MigrationStep.SCAN, lambda state, context: seen.append(context.dry_run) or {})
        orchestrator = MigrationOrchestrator(
            config=dry_run_config, executors=executors.registry, state_manager=state_manager
        )
        await orchestrator.initialize()

        await orchestrator.execute_step(MigrationStep.SCAN)

        assert seen == [True]

    @pytest.mark.asyncio
    async def test_missing_executor_is_narrated(self, dry_run_config, state_manager):
        orchestrator = MigrationOrchestrator(config=dry_run_config, state_manager=state_manager)
        await orchestrator.initialize()

        result = await orchestrator.run_migration()

        assert result.success
        assert len(result.dry_run_report.splitlines()) == 9

    @pytest.mark.asyncio
    async def test_no_report_outside_dry_run(self, orchestrator):
        await orchestrator.initialize()
        result = await orchestrator.run_migration()
        assert result.dry_run_report is None


class TestResume:
    """Test resuming persisted migrations."""

    @pytest.mark.asyncio
    async def test_resume_without_state(self, state_manager, executors):
        orchestrator = MigrationOrchestrator(executors=executors.registry, state_manager=state_manager)

        with pytest.raises(MigrationError) as exc_info:
            await orchestrator.resume()

        assert exc_info.value.kind == ErrorKind.STATE_NOT_FOUND
        assert "No saved migration state found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_resume_after_failure_skips_completed_steps(self, orchestrator, state_manager, executors, executors_factory):
        executors.replace(MigrationStep.COMPARE, failing("stack not found"))
        await orchestrator.initialize()
        await orchestrator.run_migration()

        fixed = executors_factory()
        resumed = MigrationOrchestrator(executors=fixed.registry, state_manager=state_manager)
        result = await resumed.resume()

        assert result.success
        assert fixed.calls == ALL_STEPS[ALL_STEPS.index(MigrationStep.COMPARE):]
        state = resumed.get_state()
        assert state.completed_steps == ALL_STEPS
        assert len(state.failed_steps) == 1

    @pytest.mark.asyncio
    async def test_resume_completed_migration_is_idempotent(self, orchestrator, state_manager, executors):
        await orchestrator.initialize()
        await orchestrator.run_migration()
        calls_after_run = list(executors.calls)

        resumed = MigrationOrchestrator(executors=executors.registry, state_manager=state_manager)
        first = await resumed.resume()
        second = await resumed.resume()

        assert first.executed_steps == []
        assert second.executed_steps == []
        assert first.status == MigrationStatus.COMPLETED
        assert executors.calls == calls_after_run

    @pytest.mark.asyncio
    async def test_corrupt_state_is_reported(self, state_manager, executors):
        state_manager.state_dir.mkdir(parents=True)
        state_manager.state_file.write_text("garbage", encoding="utf-8")
        orchestrator = MigrationOrchestrator(executors=executors.registry, state_manager=state_manager)

        with pytest.raises(MigrationError) as exc_info:
            await orchestrator.resume()

        assert exc_info.value.kind == ErrorKind.STATE_CORRUPT


class TestRollback:
    """Test rollback to an earlier step."""

    async def _run_through(self, orchestrator, last_step):
        await orchestrator.initialize()
        for step in ALL_STEPS[:ALL_STEPS.index(last_step) + 1]:
            result = await orchestrator.execute_step(step)
            assert result.success

    @pytest.mark.asyncio
    async def test_rollback_restores_earlier_step(self, orchestrator, state_manager, executors):
        await self._run_through(orchestrator, MigrationStep.COMPARE)

        result = await orchestrator.rollback(MigrationStep.PROTECT)

        assert result.success
        assert result.restored_backup is not None
        state = orchestrator.get_state()
        assert state.current_step == MigrationStep.PROTECT
        assert state.completed_steps == [MigrationStep.SCAN, MigrationStep.DISCOVERY, MigrationStep.PROTECT]
        assert state.status == MigrationStatus.ROLLED_BACK
        assert "generate" not in state.step_results
        assert "compare" not in state.step_results
        assert executors.rollbacks == [MigrationStep.COMPARE, MigrationStep.GENERATE]

        persisted = await state_manager.load_state()
        assert persisted.status == MigrationStatus.ROLLED_BACK
        assert persisted.current_step == MigrationStep.PROTECT

    @pytest.mark.asyncio
    async def test_run_after_rollback_continues_after_target(self, orchestrator, executors):
        await self._run_through(orchestrator, MigrationStep.COMPARE)
        await orchestrator.rollback(MigrationStep.PROTECT)
        executors.calls.clear()

        result = await orchestrator.run_migration()

        assert result.success
        assert executors.calls == ALL_STEPS[ALL_STEPS.index(MigrationStep.GENERATE):]

    @pytest.mark.asyncio
    async def test_step_after_target_can_execute_after_rollback(self, orchestrator, executors):
        await self._run_through(orchestrator, MigrationStep.COMPARE)
        await orchestrator.rollback(MigrationStep.PROTECT)

        result = await orchestrator.execute_step(MigrationStep.GENERATE)

        assert result.success
        assert orchestrator.get_state().current_step == MigrationStep.COMPARE

    @pytest.mark.asyncio
    async def test_rollback_forward_is_rejected(self, orchestrator):
        await self._run_through(orchestrator, MigrationStep.SCAN)

        result = await orchestrator.rollback(MigrationStep.IMPORT)

        assert not result.success
        assert "after the current step" in result.error

    @pytest.mark.asyncio
    async def test_failed_rollback_hook_leaves_state_untouched(self, sample_config, state_manager, executors_factory):
        class BrokenRollback(StepExecutor):
            step = MigrationStep.DISCOVERY

            async def execute(self, state, context):
                return {}

            async def rollback(self, state, context):
                raise RuntimeError("cannot restore retention policy")

        executors = executors_factory()
        executors.registry.register(BrokenRollback())
        orchestrator = MigrationOrchestrator(
            config=sample_config, executors=executors.registry, state_manager=state_manager
        )
        await self._run_through(orchestrator, MigrationStep.PROTECT)
        before = state_manager.state_file.read_text(encoding="utf-8")

        result = await orchestrator.rollback(MigrationStep.SCAN)

        assert not result.success
        assert "cannot restore retention policy" in result.error
        assert state_manager.state_file.read_text(encoding="utf-8") == before

    @pytest.mark.asyncio
    async def test_rollback_without_backups_uses_current_state(self, sample_config, executors, tmp_path):
        class NoBackups(StateManager):
            async def list_backups(self):
                return []

        state_manager = NoBackups(tmp_path / "no-backups")
        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager
        )
        await self._run_through(orchestrator, MigrationStep.GENERATE)

        result = await orchestrator.rollback(MigrationStep.DISCOVERY)

        assert result.success
        assert result.restored_backup is None
        assert orchestrator.get_state().completed_steps == [MigrationStep.SCAN, MigrationStep.DISCOVERY]


class TestVerifyAndProgress:
    """Test verification and progress reporting."""

    @pytest.mark.asyncio
    async def test_verify_completed_migration(self, orchestrator):
        await orchestrator.initialize()
        await orchestrator.run_migration()

        result = await orchestrator.verify()

        assert result.success
        assert all(result.checks.values())
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_verify_reports_failing_and_raising_probes(self, sample_config, state_manager, executors):
        def broken(state):
            raise RuntimeError("describe-stacks failed")

        orchestrator = MigrationOrchestrator(
            config=sample_config,
            executors=executors.registry,
            state_manager=state_manager,
            probes=[
                VerificationProbe("stack-exists", lambda state: True),
                VerificationProbe("outputs-match", lambda state: {"passed": False, "detail": "Output Url differs"}),
                VerificationProbe("api-reachable", broken),
            ]
        )
        await orchestrator.initialize()

        result = await orchestrator.verify()

        assert not result.success
        assert result.checks == {"stack-exists": True, "outputs-match": False, "api-reachable": False}
        assert "outputs-match: Output Url differs" in result.errors
        assert result.details["api-reachable"] == "describe-stacks failed"

    @pytest.mark.asyncio
    async def test_progress(self, orchestrator):
        await orchestrator.initialize()
        progress = orchestrator.get_progress()
        assert progress["percentage"] == 0
        assert progress["total_steps"] == 9
        assert len(progress["remaining_steps"]) == 9

        await orchestrator.run_migration()
        progress = orchestrator.get_progress()
        assert progress["current_step"] == "complete"
        assert progress["percentage"] == 100
        assert progress["remaining_steps"] == []

    @pytest.mark.asyncio
    async def test_list_state_backups(self, orchestrator):
        await orchestrator.initialize()
        await orchestrator.execute_step(MigrationStep.SCAN)
        backups = await orchestrator.list_state_backups()
        assert len(backups) == 1
