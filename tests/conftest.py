"""
Pytest configuration and fixtures for the IaC Migrator tests.

This module provides a sample configuration, a temporary state directory and
helpers that build orchestrators wired with in-memory step executors.
"""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from iac_migrator.models.config import MigrationConfig
from iac_migrator.models.state import MigrationState, MigrationStep
from iac_migrator.orchestrator.executors import ExecutorRegistry, FunctionExecutor
from iac_migrator.orchestrator.orchestrator import MigrationOrchestrator
from iac_migrator.orchestrator.state_machine import MigrationStateMachine
from iac_migrator.orchestrator.state_manager import StateManager


class RecordingExecutors:
    """Succeeding executors for every step that record each invocation."""

    def __init__(self, payloads: Optional[Dict[MigrationStep, Dict[str, Any]]] = None):
        self.payloads = payloads or {}
        self.calls: List[MigrationStep] = []
        self.rollbacks: List[MigrationStep] = []
        self.registry = ExecutorRegistry()

        for step in MigrationStateMachine.get_executable_steps():
            self.registry.register(FunctionExecutor(
                step,
                self._make_execute(step),
                rollback_func=self._make_rollback(step)
            ))

    def _make_execute(self, step: MigrationStep) -> Callable:
        def execute(state, context):
            self.calls.append(step)
            return dict(self.payloads.get(step, {"step": step.value}))
        return execute

    def _make_rollback(self, step: MigrationStep) -> Callable:
        async def rollback(state, context):
            self.rollbacks.append(step)
        return rollback

    def replace(self, step: MigrationStep, func: Callable, mutating: bool = False):
        """Swap in a custom executor for one step."""
        self.registry.register(FunctionExecutor(step, func, mutating=mutating))


@pytest.fixture
def sample_config(tmp_path: Path) -> MigrationConfig:
    """Sample migration configuration."""
    return MigrationConfig(
        source_dir=str(tmp_path / "serverless-app"),
        target_dir=str(tmp_path / "cdk-app"),
        stack_name="orders-service-dev",
        stage="dev",
        region="eu-west-1",
        account_id="123456789012"
    )


@pytest.fixture
def dry_run_config(sample_config: MigrationConfig) -> MigrationConfig:
    """Sample configuration with dry run enabled."""
    return sample_config.model_copy(update={"dry_run": True})


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    return tmp_path / ".migration-state"


@pytest.fixture
def state_manager(state_dir: Path) -> StateManager:
    """State manager over the temporary state directory."""
    return StateManager(state_dir)


@pytest.fixture
def sample_state(sample_config: MigrationConfig) -> MigrationState:
    """Fresh migration state."""
    return MigrationState(id="migration-20240101000000-abcdef12", config=sample_config)


@pytest.fixture
def executors() -> RecordingExecutors:
    """Succeeding executors for all steps."""
    return RecordingExecutors()


@pytest.fixture
def orchestrator(
    sample_config: MigrationConfig,
    state_manager: StateManager,
    executors: RecordingExecutors
) -> MigrationOrchestrator:
    """Orchestrator with succeeding executors and the default checkpoints."""
    return MigrationOrchestrator(
        config=sample_config,
        executors=executors.registry,
        state_manager=state_manager
    )


@pytest.fixture
def executors_factory():
    """Build RecordingExecutors with custom payloads."""
    return RecordingExecutors
