"""
Tests for the migration step state machine.
"""

import pytest

from iac_migrator.models.state import MigrationStep
from iac_migrator.orchestrator.state_machine import MigrationStateMachine


STEPS = MigrationStateMachine.get_all_steps()


class TestStepOrder:
    """Test step ordering helpers."""

    def test_all_steps_in_declared_order(self):
        assert STEPS[0] == MigrationStep.SCAN
        assert STEPS[-1] == MigrationStep.COMPLETE
        assert len(STEPS) == 10
        assert len(MigrationStateMachine.get_executable_steps()) == 9

    def test_step_index(self):
        assert MigrationStateMachine.get_step_index(MigrationStep.SCAN) == 0
        assert MigrationStateMachine.get_step_index(MigrationStep.COMPARE) == 4
        assert MigrationStateMachine.get_step_index("not-a-step") == -1

    def test_next_and_previous(self):
        assert MigrationStateMachine.get_next_step(MigrationStep.SCAN) == MigrationStep.DISCOVERY
        assert MigrationStateMachine.get_next_step(MigrationStep.COMPLETE) is None
        assert MigrationStateMachine.get_previous_step(MigrationStep.DISCOVERY) == MigrationStep.SCAN
        assert MigrationStateMachine.get_previous_step(MigrationStep.SCAN) is None

    def test_steps_remaining(self):
        remaining = MigrationStateMachine.get_steps_remaining(MigrationStep.IMPORT)
        assert remaining == [MigrationStep.CLEANUP, MigrationStep.COMPLETE]
        assert MigrationStateMachine.get_steps_remaining(MigrationStep.COMPLETE) == []

    def test_every_step_has_description(self):
        for step in STEPS:
            assert MigrationStateMachine.get_step_description(step) != "Unknown step"

    def test_is_complete(self):
        assert MigrationStateMachine.is_complete(MigrationStep.COMPLETE)
        assert not MigrationStateMachine.is_complete(MigrationStep.CLEANUP)


class TestTransitions:
    """Test transition validation."""

    @pytest.mark.parametrize("index", range(len(STEPS) - 1))
    def test_adjacent_transition_is_valid(self, index):
        check = MigrationStateMachine.validate_transition(STEPS[index], STEPS[index + 1])
        assert check.valid
        assert check.reason is None

    def test_forward_skip_is_invalid(self):
        for i, source in enumerate(STEPS):
            for target in STEPS[i + 2:]:
                check = MigrationStateMachine.validate_transition(source, target)
                assert not check.valid
                assert "Cannot skip" in check.reason

    def test_backward_and_same_step_transitions_are_valid(self):
        assert MigrationStateMachine.validate_transition(MigrationStep.IMPORT, MigrationStep.SCAN).valid
        assert MigrationStateMachine.validate_transition(MigrationStep.COMPARE, MigrationStep.COMPARE).valid

    def test_invalid_step_names(self):
        check = MigrationStateMachine.validate_transition("bogus", MigrationStep.SCAN)
        assert not check.valid
        assert "Invalid source step" in check.reason

        check = MigrationStateMachine.validate_transition(MigrationStep.SCAN, "bogus")
        assert not check.valid
        assert "Invalid target step" in check.reason


class TestProgress:
    """Test progress calculation."""

    def test_bounds(self):
        assert MigrationStateMachine.calculate_progress(MigrationStep.SCAN) == 0
        assert MigrationStateMachine.calculate_progress(MigrationStep.COMPLETE) == 100

    def test_monotonic(self):
        values = [MigrationStateMachine.calculate_progress(step) for step in STEPS]
        assert values == sorted(values)
